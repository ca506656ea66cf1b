#!/usr/bin/env python3
"""
Configuration Management Module

This module handles configuration loading, validation, and management for
the cloud resource importer, and sets up logging from the resulting
configuration.
"""

import os
import yaml
import json
import logging
import logging.handlers
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field, asdict
from pathlib import Path
from jsonschema import validate, ValidationError

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryConfig:
    """Configuration for resource discovery"""
    provider: str = "aws"  # aws, snapshot
    region: str = "us-east-1"
    profile: Optional[str] = None
    snapshot_file: Optional[str] = None
    max_workers: int = 10
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)  # KEY:VALUE
    targets: List[str] = field(default_factory=list)  # type.id
    fetch_dependencies: bool = True
    timeout: Optional[int] = None  # seconds


@dataclass
class OutputConfig:
    """Configuration for output generation"""
    mode: str = "hcl"  # hcl, state
    out: Optional[str] = None
    state_out: Optional[str] = None  # state file written next to HCL output
    module: Optional[str] = None  # module directory
    module_variables: Optional[str] = None  # YAML/JSON file: type -> attributes
    interpolate: bool = True
    provider_block: bool = True
    terraform_version: str = ">=1.0"
    provider_version: str = ">=5.0"
    report_file: Optional[str] = None
    report_format: str = "json"  # json, yaml


@dataclass
class LoggingConfig:
    """Configuration for logging"""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[str] = None
    console: bool = True
    max_file_size: int = 10485760  # 10MB
    backup_count: int = 5


@dataclass
class ToolConfig:
    """Main configuration class for the importer"""
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


class ConfigManager:
    """Configuration manager for the importer"""

    _STRING_LIST = {"type": "array", "items": {"type": "string"}}

    # JSON Schema for configuration validation
    CONFIG_SCHEMA = {
        "type": "object",
        "properties": {
            "discovery": {
                "type": "object",
                "properties": {
                    "provider": {"type": "string", "enum": ["aws", "snapshot"]},
                    "region": {"type": "string", "minLength": 1},
                    "profile": {"type": ["string", "null"]},
                    "snapshot_file": {"type": ["string", "null"]},
                    "max_workers": {"type": "integer", "minimum": 1, "maximum": 50},
                    "include": _STRING_LIST,
                    "exclude": _STRING_LIST,
                    "tags": {"type": "array", "items": {"type": "string", "pattern": "^[^:]+:.*$"}},
                    "targets": {"type": "array", "items": {"type": "string", "pattern": "^[^.]+\\..+$"}},
                    "fetch_dependencies": {"type": "boolean"},
                    "timeout": {"type": ["integer", "null"], "minimum": 1}
                },
                "additionalProperties": False
            },
            "output": {
                "type": "object",
                "properties": {
                    "mode": {"type": "string", "enum": ["hcl", "state"]},
                    "out": {"type": ["string", "null"]},
                    "state_out": {"type": ["string", "null"]},
                    "module": {"type": ["string", "null"]},
                    "module_variables": {"type": ["string", "null"]},
                    "interpolate": {"type": "boolean"},
                    "provider_block": {"type": "boolean"},
                    "terraform_version": {"type": "string"},
                    "provider_version": {"type": "string"},
                    "report_file": {"type": ["string", "null"]},
                    "report_format": {"type": "string", "enum": ["json", "yaml"]}
                },
                "additionalProperties": False
            },
            "logging": {
                "type": "object",
                "properties": {
                    "level": {
                        "type": "string",
                        "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
                    },
                    "format": {"type": "string"},
                    "file": {"type": ["string", "null"]},
                    "console": {"type": "boolean"},
                    "max_file_size": {"type": "integer", "minimum": 1024},
                    "backup_count": {"type": "integer", "minimum": 1}
                },
                "additionalProperties": False
            }
        },
        "additionalProperties": False
    }

    DEFAULT_LOCATIONS = [
        './ciimport-config.yaml',
        './ciimport-config.yml',
        './config/ciimport-config.yaml',
        '~/.ciimport/config.yaml',
        '/etc/ciimport/config.yaml'
    ]

    def __init__(self):
        self.config = ToolConfig()
        self._config_sources = []

    def load_config(self,
                    config_file: Optional[str] = None,
                    cli_args: Optional[Dict[str, Any]] = None,
                    env_vars: bool = True) -> ToolConfig:
        """
        Load configuration from multiple sources with precedence:
        1. CLI arguments (highest priority)
        2. Environment variables
        3. Configuration file
        4. Default values (lowest priority)
        """
        logger.debug("Loading configuration")

        # Start with default configuration
        self.config = ToolConfig()
        self._config_sources = ["defaults"]

        # Load from configuration file
        if config_file:
            self._load_from_file(config_file)
        else:
            for location in self.DEFAULT_LOCATIONS:
                expanded_path = os.path.expanduser(location)
                if os.path.exists(expanded_path):
                    self._load_from_file(expanded_path)
                    break

        # Load from environment variables
        if env_vars:
            self._load_from_env()

        # Apply CLI arguments
        if cli_args:
            self._apply_cli_args(cli_args)

        # Validate final configuration
        self._validate_config()

        logger.debug(f"Configuration loaded from sources: {', '.join(self._config_sources)}")
        return self.config

    def _load_from_file(self, config_file: str):
        """Load configuration from YAML or JSON file"""
        config_path = Path(config_file).expanduser()
        if not config_path.exists():
            logger.warning(f"Configuration file not found: {config_file}")
            return

        try:
            with open(config_path, 'r') as f:
                if config_path.suffix.lower() in ['.yaml', '.yml']:
                    file_config = yaml.safe_load(f)
                elif config_path.suffix.lower() == '.json':
                    file_config = json.load(f)
                else:
                    logger.warning(f"Unsupported configuration file format: {config_path.suffix}")
                    return
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load configuration from {config_file}: {str(e)}")
            raise ConfigurationError(f"Cannot parse {config_file}: {str(e)}") from e

        if file_config:
            if not isinstance(file_config, dict):
                raise ConfigurationError(f"Configuration file {config_file} must contain a mapping")
            self._validate_dict(file_config)
            self._merge_config(file_config)
            self._config_sources.append(f"file:{config_file}")
            logger.info(f"Loaded configuration from {config_file}")

    def _load_from_env(self):
        """Load configuration from environment variables"""
        env_config = {}

        # Discovery configuration
        if os.getenv('CIIMPORT_PROVIDER'):
            env_config.setdefault('discovery', {})['provider'] = os.getenv('CIIMPORT_PROVIDER')

        if os.getenv('CIIMPORT_REGION'):
            env_config.setdefault('discovery', {})['region'] = os.getenv('CIIMPORT_REGION')

        if os.getenv('CIIMPORT_PROFILE'):
            env_config.setdefault('discovery', {})['profile'] = os.getenv('CIIMPORT_PROFILE')

        if os.getenv('CIIMPORT_SNAPSHOT'):
            env_config.setdefault('discovery', {})['snapshot_file'] = os.getenv('CIIMPORT_SNAPSHOT')

        if os.getenv('CIIMPORT_MAX_WORKERS'):
            try:
                env_config.setdefault('discovery', {})['max_workers'] = int(os.getenv('CIIMPORT_MAX_WORKERS'))
            except ValueError:
                raise ConfigurationError(
                    f"CIIMPORT_MAX_WORKERS must be an integer, got {os.getenv('CIIMPORT_MAX_WORKERS')!r}"
                )

        for name in ('include', 'exclude', 'tags', 'targets'):
            value = os.getenv(f"CIIMPORT_{name.upper()}")
            if value:
                env_config.setdefault('discovery', {})[name] = [v.strip() for v in value.split(',') if v.strip()]

        # Output configuration
        if os.getenv('CIIMPORT_OUT'):
            env_config.setdefault('output', {})['out'] = os.getenv('CIIMPORT_OUT')

        if os.getenv('CIIMPORT_STATE_OUT'):
            env_config.setdefault('output', {})['state_out'] = os.getenv('CIIMPORT_STATE_OUT')

        if os.getenv('CIIMPORT_MODE'):
            env_config.setdefault('output', {})['mode'] = os.getenv('CIIMPORT_MODE')

        # Logging configuration
        if os.getenv('CIIMPORT_LOG_LEVEL'):
            env_config.setdefault('logging', {})['level'] = os.getenv('CIIMPORT_LOG_LEVEL').upper()

        if os.getenv('CIIMPORT_LOG_FILE'):
            env_config.setdefault('logging', {})['file'] = os.getenv('CIIMPORT_LOG_FILE')

        if env_config:
            self._merge_config(env_config)
            self._config_sources.append("environment")
            logger.debug("Loaded configuration from environment variables")

    def _apply_cli_args(self, cli_args: Dict[str, Any]):
        """Apply CLI arguments to configuration"""
        cli_config = {}

        # Discovery arguments, None means "not given"
        for key in ('provider', 'region', 'profile', 'snapshot_file', 'max_workers',
                    'fetch_dependencies', 'timeout'):
            if cli_args.get(key) is not None:
                cli_config.setdefault('discovery', {})[key] = cli_args[key]

        for key in ('include', 'exclude', 'tags', 'targets'):
            if cli_args.get(key):
                cli_config.setdefault('discovery', {})[key] = list(cli_args[key])

        if cli_args.get('snapshot_file') and cli_args.get('provider') is None:
            cli_config.setdefault('discovery', {})['provider'] = 'snapshot'

        # Output arguments
        for key in ('mode', 'out', 'state_out', 'module', 'module_variables', 'interpolate',
                    'provider_block', 'report_file', 'report_format'):
            if cli_args.get(key) is not None:
                cli_config.setdefault('output', {})[key] = cli_args[key]

        # Logging arguments
        if cli_args.get('verbose'):
            cli_config.setdefault('logging', {})['level'] = 'DEBUG'
        elif cli_args.get('quiet'):
            cli_config.setdefault('logging', {})['level'] = 'WARNING'

        if cli_args.get('log_file'):
            cli_config.setdefault('logging', {})['file'] = cli_args['log_file']

        if cli_config:
            self._merge_config(cli_config)
            self._config_sources.append("cli_args")
            logger.debug("Applied CLI arguments to configuration")

    def _merge_config(self, new_config: Dict[str, Any]):
        """Merge new configuration into existing configuration"""
        def merge_dict(base: Dict, update: Dict):
            for key, value in update.items():
                if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                    merge_dict(base[key], value)
                else:
                    base[key] = value

        config_dict = self._config_to_dict()
        merge_dict(config_dict, new_config)
        self.config = self._dict_to_config(config_dict)

    def _config_to_dict(self) -> Dict[str, Any]:
        """Convert configuration dataclass to dictionary"""
        return asdict(self.config)

    def _dict_to_config(self, config_dict: Dict[str, Any]) -> ToolConfig:
        """Convert dictionary to configuration dataclass"""
        try:
            return ToolConfig(
                discovery=DiscoveryConfig(**config_dict.get('discovery', {})),
                output=OutputConfig(**config_dict.get('output', {})),
                logging=LoggingConfig(**config_dict.get('logging', {}))
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {str(e)}") from e

    def _validate_dict(self, config_dict: Dict[str, Any]):
        try:
            validate(instance=config_dict, schema=self.CONFIG_SCHEMA)
        except ValidationError as e:
            location = '.'.join(str(p) for p in e.absolute_path)
            message = f"{location}: {e.message}" if location else e.message
            logger.error(f"Configuration validation failed: {message}")
            raise ConfigurationError(f"Invalid configuration: {message}") from e

    def _validate_config(self):
        """Validate configuration against schema"""
        self._validate_dict(self._config_to_dict())
        if self.config.discovery.provider == 'snapshot' and not self.config.discovery.snapshot_file:
            raise ConfigurationError("Invalid configuration: discovery.snapshot_file is required "
                                     "when discovery.provider is 'snapshot'")

        output = self.config.output
        if output.mode == 'state' and (output.state_out or output.module):
            raise ConfigurationError("Invalid configuration: output.state_out and output.module "
                                     "add to HCL output and require output.mode 'hcl'")
        if output.module and output.out:
            raise ConfigurationError("Invalid configuration: output.module and output.out cannot be combined")
        if output.module_variables and not output.module:
            raise ConfigurationError("Invalid configuration: output.module_variables requires output.module")
        logger.debug("Configuration validation passed")

    def save_config(self, output_file: str, format: str = 'yaml'):
        """Save current configuration to file"""
        config_dict = self._config_to_dict()

        with open(output_file, 'w') as f:
            if format.lower() == 'yaml':
                yaml.dump(config_dict, f, default_flow_style=False, indent=2, sort_keys=False)
            elif format.lower() == 'json':
                json.dump(config_dict, f, indent=2)
            else:
                raise ValueError(f"Unsupported format: {format}")

        logger.info(f"Configuration saved to {output_file}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration"""
        discovery = self.config.discovery
        return {
            'sources': self._config_sources,
            'provider': discovery.provider,
            'region': discovery.region if discovery.provider == 'aws' else None,
            'snapshot_file': discovery.snapshot_file,
            'include': discovery.include or 'all',
            'exclude': discovery.exclude,
            'tags': discovery.tags,
            'max_workers': discovery.max_workers,
            'output_mode': self.config.output.mode,
            'logging_level': self.config.logging.level
        }


MODULE_VARIABLES_SCHEMA = {
    "type": "object",
    "additionalProperties": {"type": "array", "items": {"type": "string", "minLength": 1}}
}


def load_module_variables(path: str) -> Dict[str, List[str]]:
    """
    Load the attributes to expose as module variables

    The file maps resource types to top-level attribute names, e.g.
    `aws_instance: [instance_type, ami]`.

    Raises:
        ConfigurationError: Unreadable file, unsupported extension or invalid content
    """
    suffix = Path(path).suffix.lower()
    try:
        with open(path, 'r') as f:
            if suffix in ['.yaml', '.yml']:
                values = yaml.safe_load(f)
            elif suffix == '.json':
                values = json.load(f)
            else:
                raise ConfigurationError(
                    f"Invalid module variables file {path}: only .yaml, .yml and .json are supported"
                )
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot parse module variables file {path}: {str(e)}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read module variables file {path}: {str(e)}") from e

    try:
        validate(instance=values or {}, schema=MODULE_VARIABLES_SCHEMA)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid module variables file {path}: {e.message}") from e

    return {resource_type: list(attributes) for resource_type, attributes in (values or {}).items()}


def setup_logging(config: LoggingConfig):
    """Install console and rotating file handlers on the root logger"""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(config.format)
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    if config.console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    if config.file:
        file_handler = logging.handlers.RotatingFileHandler(
            config.file,
            maxBytes=config.max_file_size,
            backupCount=config.backup_count
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for noisy in ('botocore', 'boto3', 'urllib3'):
        logging.getLogger(noisy).setLevel(max(root.level, logging.WARNING))


# Default configuration template
DEFAULT_CONFIG_TEMPLATE = """
# Cloud IaC Importer Configuration

discovery:
  provider: aws  # aws, snapshot
  region: us-east-1
  profile: null  # AWS profile to use
  snapshot_file: null  # Raw resource snapshot (provider: snapshot)
  max_workers: 10
  include: []  # Only these resource types, e.g. [aws_vpc, aws_subnet]
  exclude: []  # All types except these
  tags: []  # KEY:VALUE, all must match
  targets: []  # Explicit resources, e.g. [aws_instance.i-0abc]
  fetch_dependencies: true
  timeout: null  # seconds

output:
  mode: hcl  # hcl, state
  out: null  # File or directory; stdout when null
  state_out: null  # Also write Terraform state here (hcl mode)
  module: null  # Write HCL as a module into this directory
  module_variables: null  # File mapping resource types to attributes exposed as variables
  interpolate: true
  provider_block: true
  terraform_version: ">=1.0"
  provider_version: ">=5.0"
  report_file: null
  report_format: json  # json, yaml

logging:
  level: INFO  # DEBUG, INFO, WARNING, ERROR, CRITICAL
  format: "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
  file: null  # Log file path (null for no file logging)
  console: true
  max_file_size: 10485760  # 10MB
  backup_count: 5
"""
