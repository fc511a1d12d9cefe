"""
CLI interface for the enclaveplan engine.

Provides commands to run scripts and bulk documents against an enclave,
describe what a script would create, and initialize configuration.

Real runs need a container backend, named as `module:factory` where the
module is under one of the configured allowed_backend_modules prefixes
(or `noop` for the built-in backend that does nothing).
"""

import importlib
import json
from pathlib import Path
from typing import Optional

import click

from enclaveplan import __version__
from enclaveplan.backend import ContainerBackend, NoOpBackend
from enclaveplan.config import EnclaveConfig
from enclaveplan.errors import ConfigError, InterpretationError
from enclaveplan.schemas import PlanExecutionResult
from enclaveplan.utils import print_dry_run_banner, print_failure, print_output_line, print_success

NOOP_BACKEND = "noop"


def _get_config(ctx: click.Context) -> EnclaveConfig:
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'enclaveplan init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _load_backend(spec: str, config: EnclaveConfig) -> ContainerBackend:
    """Load a backend from `module:factory`, refusing modules outside the allow-list."""
    if spec == NOOP_BACKEND:
        return NoOpBackend()
    module_name, sep, factory_name = spec.partition(":")
    if not sep or not module_name or not factory_name:
        raise click.BadParameter(f"Backend must be 'module:factory', got '{spec}'", param_hint="--backend")
    allowed = config.allowed_backend_modules
    if not any(module_name == prefix or module_name.startswith(prefix + ".") for prefix in allowed):
        raise click.BadParameter(
            f"Module '{module_name}' is not under an allowed backend module ({', '.join(allowed) or 'none'})",
            param_hint="--backend",
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise click.BadParameter(f"Cannot import backend module '{module_name}': {e}", param_hint="--backend")
    factory = getattr(module, factory_name, None)
    if factory is None or not callable(factory):
        raise click.BadParameter(f"'{module_name}' has no callable '{factory_name}'", param_hint="--backend")
    backend = factory()
    if not isinstance(backend, ContainerBackend):
        raise click.BadParameter(
            f"'{spec}' returned {type(backend).__name__}, not a ContainerBackend", param_hint="--backend"
        )
    return backend


def _build_engine(config: EnclaveConfig, backend_spec: Optional[str], dry_run: bool, modules_dir: Path):
    from enclaveplan.engine import EnclavePlanEngine
    from enclaveplan.module_provider import DirectoryModuleProvider

    if backend_spec is None and not dry_run:
        raise click.UsageError("--backend is required unless --dry-run is given")
    backend = _load_backend(backend_spec, config) if backend_spec else NoOpBackend()
    return EnclavePlanEngine(
        backend=backend,
        provider=DirectoryModuleProvider(modules_dir),
        config=config,
    )


def _report(result: PlanExecutionResult, as_json: bool) -> None:
    """Print a run result and exit 1 if it failed."""
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        if result.dry_run:
            print_dry_run_banner()
        for line in result.output:
            print_output_line(line)
        if result.interpretation_error is not None:
            print_failure("Interpretation error", str(result.interpretation_error))
        for error in result.validation_errors:
            print_failure("Validation error", str(error))
        if result.execution_error is not None:
            print_failure("Execution error", str(result.execution_error))
            print_output_line(
                f"  {result.execution_error.completed_count} of {result.instruction_count} "
                f"instruction(s) completed before the failure"
            )
        if result.success:
            print_success(f"{result.package_id} completed ({result.instruction_count} instruction(s))")
    if not result.success:
        raise SystemExit(1)


@click.group()
@click.version_option(version=__version__, prog_name="enclaveplan")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config.yaml")
@click.pass_context
def main(ctx, config_path: Optional[Path]):
    """
    enclaveplan - Plan engine for service enclaves.

    Interpret scripts into plans, validate them, and execute them.
    """
    from enclaveplan.config import load_config
    from enclaveplan.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except (ConfigError, FileNotFoundError) as e:
        # init does not need a config; other commands check ctx.obj
        ctx.obj["config_error"] = str(e)
        return
    ctx.obj["config"] = config
    setup_logging(config.log_level, config.log_format, config.get_log_file_path())


@main.command("run")
@click.argument("script", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--args", "args_json", default="{}", help="Run arguments as a JSON object")
@click.option("--dry-run", is_flag=True, help="Update the enclave model only, without backend calls")
@click.option("--backend", "backend_spec", help="Container backend as module:factory (or 'noop')")
@click.option("--package-id", help="Package ID (defaults to the script file name)")
@click.option("--modules-dir", type=click.Path(file_okay=False, path_type=Path),
              help="Root for load()/upload_files() locators (defaults to the script's directory)")
@click.option("--json", "as_json", is_flag=True, help="Print the full result as JSON")
@click.pass_context
def run(ctx, script: Path, args_json: str, dry_run: bool, backend_spec: Optional[str],
        package_id: Optional[str], modules_dir: Optional[Path], as_json: bool):
    """Run a script against a fresh enclave."""
    config = _get_config(ctx)
    modules_dir = modules_dir or config.get_modules_dir() or script.parent
    engine = _build_engine(config, backend_spec, dry_run, modules_dir)
    result = engine.run(
        script.read_text(),
        args_json,
        dry_run=dry_run,
        package_id=package_id or script.name,
    )
    _report(result, as_json)


@main.command("bulk")
@click.argument("document", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--dry-run", is_flag=True, help="Update the enclave model only, without backend calls")
@click.option("--backend", "backend_spec", help="Container backend as module:factory (or 'noop')")
@click.option("--json", "as_json", is_flag=True, help="Print the full result as JSON")
@click.pass_context
def bulk(ctx, document: Path, dry_run: bool, backend_spec: Optional[str], as_json: bool):
    """Run a legacy bulk-instruction JSON document."""
    config = _get_config(ctx)
    engine = _build_engine(config, backend_spec, dry_run, document.parent)
    result = engine.run_bulk(document.read_text(), dry_run=dry_run, package_id=document.name)
    _report(result, as_json)


@main.command("describe")
@click.argument("script", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--args", "args_json", default="{}", help="Run arguments as a JSON object")
@click.option("--format", "output_format", type=click.Choice(["yaml", "json"]), default="yaml",
              help="Output format")
@click.option("--modules-dir", type=click.Path(file_okay=False, path_type=Path),
              help="Root for load()/upload_files() locators (defaults to the script's directory)")
@click.pass_context
def describe(ctx, script: Path, args_json: str, output_format: str, modules_dir: Optional[Path]):
    """Describe the services, files artifacts and tasks a script would create."""
    config = _get_config(ctx)
    modules_dir = modules_dir or config.get_modules_dir() or script.parent
    engine = _build_engine(config, None, True, modules_dir)
    try:
        description = engine.describe(script.read_text(), args_json, package_id=script.name)
    except InterpretationError as e:
        click.echo(f"✗ Interpretation error: {e}", err=True)
        raise SystemExit(1)
    if output_format == "json":
        click.echo(description.to_json())
    else:
        click.echo(description.to_yaml(), nl=False)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize enclaveplan configuration."""
    from enclaveplan.config import CONFIG_FILENAME, get_enclaveplan_home
    import yaml

    home = get_enclaveplan_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / CONFIG_FILENAME
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = EnclaveConfig().to_dict()
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    click.echo(f"Initialized enclaveplan config at {cfg_path}")


if __name__ == "__main__":
    main()
