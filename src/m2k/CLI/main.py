"""
Command Line Interface for M2K.
"""
import os
import sys
import threading
from concurrent import futures

import click
from pydantic import ValidationError

from ..CONFIG.settings import load_config
from ..DEPLOY.factory import build_coordinator, make_store
from ..errors import M2KError
from ..MODELS.deploy import DeployOptions, DestroyOptions
from ..PIPELINE.naming import translate_pipeline_name
from ..REGISTRY.image_index import LocalImageIndex
from ..UTILS.log_config import configure_logging


def _parse_vars(values):
    variables = {}
    for item in values:
        if "=" not in item:
            raise click.BadParameter(f"'{item}' is not KEY=VALUE", param_hint="--var")
        key, value = item.split("=", 1)
        variables[key.strip()] = value
    return variables


def _config(ctx, **overrides):
    try:
        return load_config(ctx.obj['env_file'], **overrides)
    except ValidationError as e:
        raise click.UsageError(f"invalid configuration: {e}")


def _fail(error: M2KError):
    click.echo(f"Error: {error}", err=True)
    sys.exit(error.exit_code)


def _result(future):
    # Short waits keep the main thread responsive to KeyboardInterrupt
    while True:
        try:
            return future.result(timeout=0.5)
        except futures.TimeoutError:
            continue


def _run(operation):
    """
    Runs `operation(cancel)` on a worker thread so Ctrl-C reaches the main
    thread, which then asks the operation to stop and waits for it.
    """
    cancel = threading.Event()
    pool = futures.ThreadPoolExecutor(max_workers=1)
    future = pool.submit(operation, cancel)
    try:
        return _result(future)
    except KeyboardInterrupt:
        cancel.set()
        click.echo("Interrupted, waiting for running steps to stop...", err=True)
        try:
            future.result()
        except M2KError as e:
            _fail(e)
        sys.exit(130)
    except M2KError as e:
        _fail(e)
    finally:
        pool.shutdown(wait=False)


manifest_option = click.option('--file', '-f', 'manifest_path', default='', help='Manifest file path')
workdir_option = click.option('--workdir', default=None, type=click.Path(file_okay=False),
                              help='Directory to run from (defaults to the current one)')


@click.group()
@click.option('--log-level', default=None, help='Log level (overrides M2K_LOG_LEVEL)')
@click.option('--env-file', default=None, type=click.Path(dir_okay=False), help='.env file with M2K_* settings')
@click.pass_context
def cli(ctx, log_level, env_file):
    """
    M2K - Manifest to Kubernetes.

    Builds the images of an application manifest, skipping the ones already
    in the registry, and deploys it as a tracked pipeline.
    """
    ctx.ensure_object(dict)
    ctx.obj['env_file'] = env_file
    config = _config(ctx, log_level=log_level)
    try:
        configure_logging(config.log_level)
    except ValueError as e:
        raise click.UsageError(str(e))


@cli.command()
@manifest_option
@workdir_option
@click.option('--name', default=None, help='Pipeline name (defaults to the repository name)')
@click.option('--namespace', '-n', default=None, help='Target namespace')
@click.option('--build', 'force_build', is_flag=True, help='Rebuild every image, even if it exists')
@click.option('--max-workers', type=click.IntRange(min=1), default=None, help='Concurrent builds')
@click.option('--var', 'variables', multiple=True, help='KEY=VALUE made available to deploy commands')
@click.pass_context
def deploy(ctx, manifest_path, workdir, name, namespace, force_build, max_workers, variables):
    """Build what is missing and deploy the manifest."""
    config = _config(ctx, namespace=namespace, max_workers=max_workers)
    options = DeployOptions(
        workdir=workdir or os.getcwd(),
        manifest_path=manifest_path,
        name=name,
        force_build=force_build,
        variables=_parse_vars(variables),
    )
    coordinator = build_coordinator(config)
    result = _run(lambda cancel: coordinator.deploy(options, cancel))

    for component, action in result.decisions.items():
        click.echo(f"{component}: {action} -> {result.images.get(component, '')}")
    click.echo(f"Pipeline '{result.pipeline}' deployed in namespace '{config.namespace}'.")


@cli.command()
@manifest_option
@workdir_option
@click.option('--name', default=None, help='Pipeline name (defaults to the repository name)')
@click.option('--namespace', '-n', default=None, help='Target namespace')
@click.pass_context
def destroy(ctx, manifest_path, workdir, name, namespace):
    """Run the destroy commands and remove the pipeline record."""
    config = _config(ctx, namespace=namespace)
    options = DestroyOptions(workdir=workdir or os.getcwd(), manifest_path=manifest_path, name=name)
    coordinator = build_coordinator(config)
    result = _run(lambda cancel: coordinator.destroy(options, cancel))

    if not result.record_existed:
        click.echo(f"Pipeline '{result.pipeline}' had no record.")
    click.echo(f"Pipeline '{result.pipeline}' destroyed.")


@cli.command()
@manifest_option
@workdir_option
@click.option('--no-cache', 'force_build', is_flag=True, help='Rebuild even if the image exists')
@click.option('--max-workers', type=click.IntRange(min=1), default=None, help='Concurrent builds')
@click.argument('components', nargs=-1)
@click.pass_context
def build(ctx, manifest_path, workdir, force_build, max_workers, components):
    """Build the manifest's images without deploying."""
    config = _config(ctx, max_workers=max_workers)
    options = DeployOptions(
        workdir=workdir or os.getcwd(),
        manifest_path=manifest_path,
        force_build=force_build,
        components=list(components),
    )
    coordinator = build_coordinator(config)
    result = _run(lambda cancel: coordinator.build(options, cancel))

    for component, action in result.decisions.items():
        click.echo(f"{component}: {action} -> {result.images.get(component, '')}")


@cli.group()
def pipeline():
    """Inspect pipeline records."""


@pipeline.command('show')
@click.argument('name')
@click.option('--namespace', '-n', default=None, help='Namespace of the pipeline')
@click.pass_context
def show(ctx, name, namespace):
    """Print the stored record of a pipeline."""
    config = _config(ctx, namespace=namespace)
    try:
        pipeline_name = translate_pipeline_name(name)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="NAME")

    record = _run(lambda cancel: make_store(config).get(pipeline_name))
    if record is None:
        click.echo(f"Pipeline '{pipeline_name}' not found.", err=True)
        sys.exit(1)

    for key, value in record.to_data().items():
        click.echo(f"{key}: {value}")


@cli.command()
@click.pass_context
def images(ctx):
    """List the images in the local image index."""
    config = _config(ctx)
    entries = _run(lambda cancel: LocalImageIndex(config.image_index).list_images())
    if not entries:
        click.echo("No images.")
        return
    for entry in entries:
        click.echo(f"{entry.reference}  {entry.digest}  {entry.registered_at}")


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
