#!/usr/bin/env python3
"""
Unit tests for configuration loading
"""

import logging
import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import patch

import yaml

# Add src directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../src'))

from cloud_iac_importer.config import (
    DEFAULT_CONFIG_TEMPLATE,
    ConfigManager,
    LoggingConfig,
    load_module_variables,
    setup_logging,
)
from cloud_iac_importer.errors import ConfigurationError


class TestConfigManager(unittest.TestCase):
    """Test configuration precedence and validation"""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.manager = ConfigManager()

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def write_config(self, content, name='config.yaml'):
        path = os.path.join(self.temp_dir, name)
        with open(path, 'w') as f:
            f.write(content)
        return path

    def test_defaults(self):
        config = self.manager.load_config(os.path.join(self.temp_dir, 'missing.yaml'), env_vars=False)

        self.assertEqual(config.discovery.provider, 'aws')
        self.assertEqual(config.discovery.region, 'us-east-1')
        self.assertEqual(config.discovery.max_workers, 10)
        self.assertTrue(config.discovery.fetch_dependencies)
        self.assertEqual(config.output.mode, 'hcl')
        self.assertTrue(config.output.interpolate)

    def test_load_yaml_file(self):
        path = self.write_config("""
discovery:
  region: eu-central-1
  include: [aws_vpc, aws_subnet]
  tags: ["env:prod"]
output:
  mode: state
""")

        config = self.manager.load_config(path, env_vars=False)

        self.assertEqual(config.discovery.region, 'eu-central-1')
        self.assertEqual(config.discovery.include, ['aws_vpc', 'aws_subnet'])
        self.assertEqual(config.discovery.tags, ['env:prod'])
        self.assertEqual(config.output.mode, 'state')
        self.assertEqual(config.output.report_format, 'json')
        self.assertIn(f"file:{path}", self.manager.get_config_summary()['sources'])

    def test_load_json_file(self):
        path = self.write_config('{"discovery": {"max_workers": 4}}', name='config.json')

        config = self.manager.load_config(path, env_vars=False)

        self.assertEqual(config.discovery.max_workers, 4)

    def test_unknown_keys_rejected(self):
        path = self.write_config("discovery:\n  regoin: us-west-2\n")

        with self.assertRaises(ConfigurationError):
            self.manager.load_config(path, env_vars=False)

    def test_invalid_values_rejected(self):
        for content in ["discovery:\n  max_workers: 0\n",
                        "discovery:\n  tags: [envprod]\n",
                        "discovery:\n  targets: [aws_vpc]\n",
                        "output:\n  mode: json\n"]:
            path = self.write_config(content)
            with self.assertRaises(ConfigurationError, msg=content):
                ConfigManager().load_config(path, env_vars=False)

    def test_malformed_yaml(self):
        path = self.write_config("discovery: [unclosed\n")

        with self.assertRaises(ConfigurationError):
            self.manager.load_config(path, env_vars=False)

    def test_non_mapping_file(self):
        path = self.write_config("- just\n- a list\n")

        with self.assertRaises(ConfigurationError):
            self.manager.load_config(path, env_vars=False)

    @patch.dict(os.environ, {'CIIMPORT_REGION': 'ap-south-1', 'CIIMPORT_INCLUDE': 'aws_vpc, aws_subnet',
                             'CIIMPORT_LOG_LEVEL': 'debug'})
    def test_environment_overrides_file(self):
        path = self.write_config("discovery:\n  region: eu-central-1\n  max_workers: 3\n")

        config = self.manager.load_config(path)

        self.assertEqual(config.discovery.region, 'ap-south-1')
        self.assertEqual(config.discovery.max_workers, 3)
        self.assertEqual(config.discovery.include, ['aws_vpc', 'aws_subnet'])
        self.assertEqual(config.logging.level, 'DEBUG')

    @patch.dict(os.environ, {'CIIMPORT_MAX_WORKERS': 'many'})
    def test_environment_bad_integer(self):
        with self.assertRaises(ConfigurationError):
            self.manager.load_config(os.path.join(self.temp_dir, 'missing.yaml'))

    @patch.dict(os.environ, {'CIIMPORT_REGION': 'ap-south-1'})
    def test_cli_overrides_environment(self):
        config = self.manager.load_config(
            os.path.join(self.temp_dir, 'missing.yaml'),
            cli_args={'region': 'us-west-2', 'profile': None, 'include': (), 'interpolate': False,
                      'verbose': True}
        )

        self.assertEqual(config.discovery.region, 'us-west-2')
        self.assertIsNone(config.discovery.profile)
        self.assertFalse(config.output.interpolate)
        self.assertEqual(config.logging.level, 'DEBUG')

    def test_snapshot_file_selects_snapshot_provider(self):
        config = self.manager.load_config(os.path.join(self.temp_dir, 'missing.yaml'), env_vars=False,
                                          cli_args={'snapshot_file': 'resources.json'})

        self.assertEqual(config.discovery.provider, 'snapshot')
        self.assertIsNone(self.manager.get_config_summary()['region'])

    def test_snapshot_provider_requires_file(self):
        path = self.write_config("discovery:\n  provider: snapshot\n")

        with self.assertRaises(ConfigurationError):
            self.manager.load_config(path, env_vars=False)

    def test_save_and_reload(self):
        self.manager.load_config(os.path.join(self.temp_dir, 'missing.yaml'), env_vars=False,
                                 cli_args={'region': 'ca-central-1', 'tags': ('env:prod',)})
        path = os.path.join(self.temp_dir, 'saved.yaml')
        self.manager.save_config(path)

        config = ConfigManager().load_config(path, env_vars=False)

        self.assertEqual(config.discovery.region, 'ca-central-1')
        self.assertEqual(config.discovery.tags, ['env:prod'])

    def test_invalid_output_combinations(self):
        for content in ["output:\n  mode: state\n  state_out: terraform.tfstate\n",
                        "output:\n  mode: state\n  module: modules/web\n",
                        "output:\n  module: modules/web\n  out: main.tf\n",
                        "output:\n  module_variables: variables.yaml\n"]:
            path = self.write_config(content)
            with self.assertRaises(ConfigurationError, msg=content):
                ConfigManager().load_config(path, env_vars=False)

    def test_module_output_config(self):
        path = self.write_config("output:\n  module: modules/web\n  module_variables: variables.yaml\n"
                                 "  state_out: terraform.tfstate\n")

        config = self.manager.load_config(path, env_vars=False)

        self.assertEqual(config.output.module, 'modules/web')
        self.assertEqual(config.output.module_variables, 'variables.yaml')
        self.assertEqual(config.output.state_out, 'terraform.tfstate')

    def test_default_template_is_valid(self):
        ConfigManager()._validate_dict(yaml.safe_load(DEFAULT_CONFIG_TEMPLATE))


class TestModuleVariables(unittest.TestCase):
    """Test loading of module variable files"""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def write(self, name, content):
        path = os.path.join(self.temp_dir, name)
        with open(path, 'w') as f:
            f.write(content)
        return path

    def test_load_yaml(self):
        path = self.write('variables.yaml', "aws_instance: [instance_type, ami]\naws_subnet:\n  - cidr_block\n")

        self.assertEqual(load_module_variables(path),
                         {'aws_instance': ['instance_type', 'ami'], 'aws_subnet': ['cidr_block']})

    def test_load_json(self):
        path = self.write('variables.json', '{"aws_vpc": ["cidr_block"]}')

        self.assertEqual(load_module_variables(path), {'aws_vpc': ['cidr_block']})

    def test_empty_file(self):
        self.assertEqual(load_module_variables(self.write('variables.yml', '')), {})

    def test_invalid_files(self):
        for name, content in [('variables.txt', 'aws_vpc: [cidr_block]\n'),
                              ('variables.yaml', 'aws_vpc: cidr_block\n'),
                              ('variables.yaml', '- aws_vpc\n'),
                              ('variables.yaml', 'aws_vpc: [""]\n'),
                              ('variables.json', '{"aws_vpc": [')]:
            path = self.write(name, content)
            with self.assertRaises(ConfigurationError, msg=content):
                load_module_variables(path)

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError):
            load_module_variables(os.path.join(self.temp_dir, 'missing.yaml'))


class TestSetupLogging(unittest.TestCase):
    """Test root logger configuration"""

    def setUp(self):
        self.root = logging.getLogger()
        self.saved_handlers = list(self.root.handlers)
        self.saved_level = self.root.level
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        for handler in list(self.root.handlers):
            handler.close()
            self.root.removeHandler(handler)
        for handler in self.saved_handlers:
            self.root.addHandler(handler)
        self.root.setLevel(self.saved_level)
        shutil.rmtree(self.temp_dir)

    def test_console_and_file_handlers(self):
        log_file = os.path.join(self.temp_dir, 'import.log')

        setup_logging(LoggingConfig(level='DEBUG', file=log_file))
        logging.getLogger('cloud_iac_importer.test').info('hello')

        self.assertEqual(self.root.level, logging.DEBUG)
        self.assertEqual(len(self.root.handlers), 2)
        self.assertEqual(logging.getLogger('botocore').level, logging.WARNING)
        for handler in self.root.handlers:
            handler.flush()
        with open(log_file) as f:
            self.assertIn('hello', f.read())

    def test_console_only(self):
        setup_logging(LoggingConfig(level='ERROR', console=True))

        self.assertEqual(len(self.root.handlers), 1)
        self.assertEqual(logging.getLogger('boto3').level, logging.ERROR)


if __name__ == '__main__':
    unittest.main()
