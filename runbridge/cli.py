import click


@click.group()
def main() -> None:
    """runbridge - runs KubeSphere PipelineRuns on Tekton."""


@main.command()
@click.option("--host", default=None, help="Health server bind host (default: from RUNBRIDGE_HOST or 0.0.0.0).")
@click.option("--port", default=None, type=int, help="Health server bind port (default: from RUNBRIDGE_PORT or 8081).")
def controller(host: str | None, port: int | None) -> None:
    """Start the PipelineRun controller with its health endpoints."""
    import uvicorn

    from runbridge.controller.settings import get_settings

    settings = get_settings()

    uvicorn.run(
        "runbridge.controller.app:app",
        host=host or settings.host,
        port=port or settings.port,
        log_level="warning",  # uvicorn's own logging is intercepted by loguru
        # Leave room for the manager to drain in-flight reconciles.
        timeout_graceful_shutdown=settings.graceful_shutdown_timeout + 10,
    )


@main.command()
@click.argument("namespace")
@click.argument("name")
def reconcile(namespace: str, name: str) -> None:
    """Reconcile a single PipelineRun once and report the outcome."""
    import asyncio

    from runbridge.controller.app import create_record_store
    from runbridge.controller.log import setup_logging
    from runbridge.controller.models.resources import NamespacedName
    from runbridge.controller.reconcile.reconciler import PipelineRunReconciler
    from runbridge.controller.settings import get_settings

    settings = get_settings()
    setup_logging(settings.log_level)

    reconciler = PipelineRunReconciler(
        create_record_store(settings),
        finalizer_name=settings.finalizer_name,
        conflict_retries=settings.conflict_retries,
    )
    key = NamespacedName(namespace=namespace, name=name)
    outcome = asyncio.run(reconciler.reconcile(key))

    if outcome.error is not None:
        raise click.ClickException(f"{key}: {outcome.error}")
    suffix = " (requeue requested)" if outcome.requeue else ""
    click.echo(f"{key} reconciled{suffix}.")


if __name__ == "__main__":
    main()
