#!/usr/bin/env python3
"""
Command Line Interface for the Cloud IaC Importer

This module provides the CLI that imports live cloud resources into
Terraform configuration or state.
"""

import click
import io
import json
import logging
import os
import sys
import tempfile
from typing import Any, Dict

import yaml
from tabulate import tabulate

from . import __version__
from .adapters import export_snapshot
from .config import ConfigManager, DEFAULT_CONFIG_TEMPLATE, load_module_variables, setup_logging
from .discovery import DiscoveryEngine
from .errors import ConfigurationError, FatalDiscoveryError, ImporterError
from .filters import FilterEngine, FilterSpec
from .orchestrator import ImportOrchestrator, RunContext, build_adapter
from .registry import default_registry
from .writer import MODE_HCL, MODE_STATE

logger = logging.getLogger(__name__)


def discovery_options(func):
    """Options shared by every command that talks to a provider"""
    options = [
        click.option('--provider', type=click.Choice(['aws', 'snapshot']),
                     help='Provider adapter to use'),
        click.option('--region', '-r', help='Region to import from'),
        click.option('--profile', '-p', help='AWS profile to use'),
        click.option('--snapshot', 'snapshot_file', type=click.Path(exists=True, dir_okay=False),
                     help='Replay a raw resource snapshot instead of calling the provider'),
        click.option('--include', '-i', multiple=True,
                     help='Only import these resource types (repeatable, comma separated)'),
        click.option('--exclude', '-e', multiple=True,
                     help='Import all resource types except these (repeatable, comma separated)'),
        click.option('--tags', '-t', multiple=True,
                     help='Only import resources carrying this KEY:VALUE tag (repeatable)'),
        click.option('--target', 'targets', multiple=True,
                     help='Import only this resource, written as TYPE.ID (repeatable)'),
        click.option('--max-workers', type=click.IntRange(1, 50),
                     help='Maximum number of concurrent provider calls'),
        click.option('--timeout', type=click.IntRange(min=1),
                     help='Cancel the run after this many seconds'),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True,
              help='Enable verbose logging')
@click.option('--quiet', '-q', is_flag=True,
              help='Enable quiet mode (warnings and errors only)')
@click.option('--log-file', type=click.Path(dir_okay=False),
              help='Also write logs to this file')
@click.pass_context
def cli(ctx, config, verbose, quiet, log_file):
    """
    Cloud IaC Importer

    Imports existing cloud resources into Terraform configuration (HCL) or
    Terraform state, following references between resources so the result
    is self-contained.
    """
    ctx.ensure_object(dict)

    ctx.obj['config_file'] = config
    ctx.obj['verbose'] = verbose
    ctx.obj['quiet'] = quiet
    ctx.obj['log_file'] = log_file


def _load_config(ctx, cli_args: Dict[str, Any]):
    cli_args = dict(cli_args)
    cli_args['verbose'] = ctx.obj.get('verbose', False)
    cli_args['quiet'] = ctx.obj.get('quiet', False)
    cli_args['log_file'] = ctx.obj.get('log_file')

    config_manager = ConfigManager()
    config = config_manager.load_config(config_file=ctx.obj.get('config_file'), cli_args=cli_args)
    setup_logging(config.logging)
    return config


def _discovery_args(provider, region, profile, snapshot_file, include, exclude, tags, targets,
                    max_workers, timeout) -> Dict[str, Any]:
    return {
        'provider': provider,
        'region': region,
        'profile': profile,
        'snapshot_file': snapshot_file,
        'include': list(include),
        'exclude': list(exclude),
        'tags': list(tags),
        'targets': list(targets),
        'max_workers': max_workers,
        'timeout': timeout,
    }


def _filter_spec(config) -> FilterSpec:
    discovery = config.discovery
    return FilterSpec.from_strings(
        include=discovery.include,
        exclude=discovery.exclude,
        tags=discovery.tags,
        targets=discovery.targets,
    )


def atomic_write(path: str, content: str):
    """Write `content` to `path` through a temporary file and a rename"""
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.ciimport-', suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(content)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def write_documents(directory: str, documents: Dict[str, str]):
    """Write relative path -> content pairs below `directory`"""
    for relative_path, content in sorted(documents.items()):
        path = os.path.join(directory, *relative_path.split('/'))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        atomic_write(path, content)


def _is_directory(path: str) -> bool:
    return os.path.isdir(path) or path.endswith(os.sep)


def _check_destinations(output):
    """Reject output paths that cannot receive the requested documents"""
    if output.mode == MODE_STATE and output.out and _is_directory(output.out):
        raise ConfigurationError(f"Terraform state is a single file, {output.out} is a directory")
    if output.state_out and _is_directory(output.state_out):
        raise ConfigurationError(f"Terraform state is a single file, {output.state_out} is a directory")
    if output.module and os.path.exists(output.module) and not os.path.isdir(output.module):
        raise ConfigurationError(f"--module must be a directory: {output.module}")


@cli.command(name='import')
@discovery_options
@click.option('--tf-state', is_flag=True,
              help='Write Terraform state instead of HCL configuration')
@click.option('--out', '-o',
              help='Output file, or directory for one .tf file per category (default: stdout)')
@click.option('--state-out', type=click.Path(dir_okay=False),
              help='Also write Terraform state to this file, from the same import')
@click.option('--module', 'module_dir', type=click.Path(file_okay=False),
              help='Write HCL as a Terraform module into this directory')
@click.option('--module-variables', type=click.Path(exists=True, dir_okay=False),
              help='YAML/JSON file listing, per resource type, the attributes to expose as module variables')
@click.option('--interpolate/--no-interpolate', default=None,
              help='Render references between resources as expressions')
@click.option('--provider-block/--no-provider-block', default=None,
              help='Include terraform and provider blocks in HCL output')
@click.option('--no-fetch-dependencies', is_flag=True,
              help='Do not fetch referenced resources that were not selected')
@click.option('--report-file', help='Write the import report to this file')
@click.option('--report-format', type=click.Choice(['json', 'yaml']),
              help='Import report format')
@click.pass_context
def import_resources(ctx, provider, region, profile, snapshot_file, include, exclude, tags, targets,
                     max_workers, timeout, tf_state, out, state_out, module_dir, module_variables,
                     interpolate, provider_block, no_fetch_dependencies, report_file, report_format):
    """
    Import cloud resources as Terraform configuration or state

    Discovers the selected resources, fetches everything they reference,
    and writes a deterministic, cross-referenced result. HCL and state can
    be written from the same import with --state-out.
    """
    try:
        cli_args = _discovery_args(provider, region, profile, snapshot_file, include, exclude,
                                   tags, targets, max_workers, timeout)
        cli_args.update({
            'mode': MODE_STATE if tf_state else None,
            'out': out,
            'state_out': state_out,
            'module': module_dir,
            'module_variables': module_variables,
            'interpolate': interpolate,
            'provider_block': provider_block,
            'fetch_dependencies': False if no_fetch_dependencies else None,
            'report_file': report_file,
            'report_format': report_format,
        })
        config = _load_config(ctx, cli_args)
        output = config.output
        _check_destinations(output)

        registry = default_registry()
        filter_spec = _filter_spec(config)
        variables = load_module_variables(output.module_variables) if output.module_variables else None
        adapter = build_adapter(config, registry)
        orchestrator = ImportOrchestrator.from_config(config, adapter, registry, module_variables=variables)
        run_ctx = RunContext(adapter, filter_spec, max_workers=config.discovery.max_workers,
                             timeout=config.discovery.timeout)

        mode = output.mode
        destination = output.out
        module_name = os.path.basename(os.path.normpath(output.module)) if output.module else None
        split = bool(destination) and mode == MODE_HCL and _is_directory(destination)

        buffers = {}
        if not (split or module_name):
            buffers[mode] = io.StringIO()
        if output.state_out:
            buffers[MODE_STATE] = io.StringIO()

        try:
            report = orchestrator.run(run_ctx, mode=mode, split=split, module=module_name, outputs=buffers)
        except KeyboardInterrupt:
            run_ctx.cancel()
            raise

        if report.success:
            if module_name:
                write_documents(output.module, report.documents)
                click.echo(f"Wrote module {module_name} ({len(report.documents)} files) to {output.module}",
                           err=True)
            elif split:
                write_documents(destination, report.documents)
                click.echo(f"Wrote {len(report.documents)} files to {destination}", err=True)
            elif destination:
                atomic_write(destination, buffers[mode].getvalue())
                click.echo(f"Wrote {mode} output to {destination}", err=True)
            else:
                click.echo(buffers[mode].getvalue(), nl=False)

            if output.state_out:
                atomic_write(output.state_out, buffers[MODE_STATE].getvalue())
                click.echo(f"Wrote {MODE_STATE} output to {output.state_out}", err=True)

        _print_report(report)

        if config.output.report_file:
            report.export_report(config.output.report_file, config.output.report_format)

        if report.cancelled:
            click.echo("Error Import cancelled, no output written", err=True)
            sys.exit(1)
        if report.write_error:
            click.echo(f"Error Failed to write output: {report.write_error}", err=True)
            sys.exit(1)

    except FatalDiscoveryError as e:
        click.echo(f"Error Import aborted: {str(e)}", err=True)
        sys.exit(1)
    except ImporterError as e:
        click.echo(f"Error Import failed: {str(e)}", err=True)
        sys.exit(1)
    except OSError as e:
        click.echo(f"Error Failed to write output: {str(e)}", err=True)
        sys.exit(1)


def _print_report(report):
    click.echo("\nImport Summary:", err=True)
    click.echo(report.summary_table(), err=True)
    click.echo(f"   Filtered out: {report.filtered_out}", err=True)
    click.echo(f"   Unresolved references: {report.unresolved}", err=True)
    if report.demoted:
        click.echo(f"   Demoted cyclic references: {report.demoted}", err=True)

    if report.warnings:
        click.echo("\nWarning  Partial failures:", err=True)
        for warning in report.warnings:
            click.echo(f"   - {warning}", err=True)
    for build_error in report.build_errors:
        click.echo(f"   - skipped {build_error}", err=True)


@cli.command()
@discovery_options
@click.option('--output-file', '-o', default='discovery_snapshot.json',
              help='Output file for the raw resource snapshot')
@click.option('--format', 'output_format', type=click.Choice(['json', 'yaml', 'table']),
              default='json', help='Output format')
@click.pass_context
def discover(ctx, provider, region, profile, snapshot_file, include, exclude, tags, targets,
             max_workers, timeout, output_file, output_format):
    """
    Discover resources without building configuration

    Lists the selected resource types and exports the raw resources as a
    snapshot that `import --snapshot` can replay.
    """
    try:
        config = _load_config(ctx, _discovery_args(provider, region, profile, snapshot_file, include,
                                                   exclude, tags, targets, max_workers, timeout))

        registry = default_registry()
        filter_engine = FilterEngine(_filter_spec(config))
        filter_engine.validate(registry)
        adapter = build_adapter(config, registry)
        run_ctx = RunContext(adapter, filter_engine.spec, max_workers=config.discovery.max_workers,
                             timeout=config.discovery.timeout)

        click.echo("Discovering resources...", err=True)
        adapter.verify(run_ctx)
        result = DiscoveryEngine(registry, filter_engine).discover(run_ctx)

        rows = []
        for resource_type in sorted(set(result.per_type) | set(result.errors)):
            stats = result.per_type.get(resource_type, {})
            rows.append([resource_type, stats.get('discovered', 0), stats.get('included', 0),
                         len(result.errors.get(resource_type, []))])
        click.echo(tabulate(rows, headers=['Resource Type', 'Discovered', 'Included', 'Errors'],
                            tablefmt='grid'), err=True)

        for resource_type, messages in sorted(result.errors.items()):
            for message in messages:
                click.echo(f"Warning  {resource_type}: {message}", err=True)

        if output_format != 'table':
            provider_info = dict(adapter.provider_block(), name=adapter.name)
            export_snapshot(result.included, output_file, provider=provider_info, format=output_format)
            click.echo(f"\nFiles: Snapshot exported to: {output_file}", err=True)

        if result.cancelled:
            click.echo("Error Discovery cancelled", err=True)
            sys.exit(1)

    except FatalDiscoveryError as e:
        click.echo(f"Error Discovery aborted: {str(e)}", err=True)
        sys.exit(1)
    except ImporterError as e:
        click.echo(f"Error Discovery failed: {str(e)}", err=True)
        sys.exit(1)


@cli.command(name='resource-types')
@click.option('--category', help='Only list this category')
def resource_types(category):
    """List the supported resource types"""
    registry = default_registry()
    rows = []
    for descriptor in registry:
        if category and descriptor.category != category:
            continue
        references = ', '.join(
            f"{ref.attribute} -> {ref.target_type}{' (soft)' if ref.soft else ''}"
            for ref in descriptor.reference_fields
        )
        rows.append([descriptor.name, descriptor.category, ', '.join(descriptor.identity_fields), references])
    click.echo(tabulate(rows, headers=['Resource Type', 'Category', 'Identity', 'References'], tablefmt='grid'))


@cli.command()
@click.option('--output-file', '-o', default='ciimport-config.yaml',
              help='Output configuration file')
@click.option('--format', 'config_format', type=click.Choice(['yaml', 'json']),
              default='yaml', help='Configuration file format')
def init_config(output_file, config_format):
    """
    Generate a default configuration file

    This command creates a default configuration file that can be customized
    for your environment.
    """
    try:
        if os.path.exists(output_file):
            if not click.confirm(f"Configuration file {output_file} already exists. Overwrite?"):
                click.echo("Configuration file creation cancelled.")
                return

        with open(output_file, 'w') as f:
            if config_format == 'yaml':
                f.write(DEFAULT_CONFIG_TEMPLATE)
            else:
                config_dict = yaml.safe_load(DEFAULT_CONFIG_TEMPLATE)
                json.dump(config_dict, f, indent=2)

        click.echo(f"Success Default configuration file created: {output_file}")
        click.echo(" Edit this file to customize settings for your environment.")

    except OSError as e:
        click.echo(f"Error Failed to create configuration file: {str(e)}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def validate_config(ctx):
    """
    Validate configuration file

    This command validates the configuration file for syntax and semantic errors.
    """
    try:
        config_manager = ConfigManager()
        config = config_manager.load_config(config_file=ctx.obj.get('config_file'))
        FilterEngine(_filter_spec(config)).validate(default_registry())

        click.echo("Success Configuration validation passed!")

        summary = config_manager.get_config_summary()
        click.echo("\n Configuration Summary:")
        for key, value in summary.items():
            click.echo(f"   {key}: {value}")

    except ImporterError as e:
        click.echo(f"Error Configuration validation failed: {str(e)}", err=True)
        sys.exit(1)


def main():
    """Main entry point for the CLI"""
    try:
        cli()
    except KeyboardInterrupt:
        click.echo("\nWarning  Operation cancelled by user.", err=True)
        sys.exit(1)


if __name__ == '__main__':
    main()
