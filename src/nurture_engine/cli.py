"""
Nurture Engine CLI
"""
import click
import asyncio
import json
import logging

from .config import EngineSettings
from .exceptions import WorkflowEngineError


def _setup_logging(settings: EngineSettings):
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


async def _with_engine(settings: EngineSettings, action):
    """Open the configured database, run `action(engine)`, close it again"""
    from .api.app import build_engine
    from .api.dependencies import app_state

    engine = await build_engine(settings)
    try:
        return await action(engine)
    finally:
        db_manager = app_state.pop("db_manager", None)
        if db_manager:
            await db_manager.close()


def _run(settings: EngineSettings, action):
    try:
        return asyncio.run(_with_engine(settings, action))
    except WorkflowEngineError as e:
        raise click.ClickException(f"{e.error_code}: {e.message}")


@click.group()
@click.pass_context
def cli(ctx):
    """Nurture Engine CLI"""
    settings = EngineSettings.from_env()
    _setup_logging(settings)
    ctx.obj = settings


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to bind to')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
@click.pass_obj
def serve(settings, host, port, reload):
    """Start the API server"""
    import uvicorn

    host = host or settings.api_host
    port = port or settings.api_port
    click.echo(f"Starting API server on {host}:{port}")
    uvicorn.run(
        "nurture_engine.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower()
    )


@cli.command('init-db')
@click.pass_obj
def init_db(settings):
    """Create the database tables"""
    async def _noop(engine):
        return None

    _run(settings, _noop)
    click.echo("Database tables created")


@cli.command('load-workflow')
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--validate-only', is_flag=True, help='Only validate, do not store')
@click.pass_obj
def load_workflow(settings, workflow_file, validate_only):
    """Store a workflow definition from a YAML or JSON file"""
    if validate_only:
        from .core.parser import WorkflowParser

        try:
            workflow = WorkflowParser().parse_file(workflow_file)
        except WorkflowEngineError as e:
            raise click.ClickException(f"{e.error_code}: {e.message}")
        click.echo(f"Workflow '{workflow.name}' is valid ({len(workflow.graph)} steps)")
        return

    async def _load(engine):
        return await engine.create_workflow(workflow_file)

    workflow_id = _run(settings, _load)
    click.echo(f"Stored workflow: {workflow_id}")


@cli.command()
@click.option('--workflow-id', default=None, help='Workflow ID')
@click.option('--workflow-name', default=None, help='Workflow name')
@click.option('--subscriber-id', default=None, help='Subscriber ID')
@click.option('--email', 'subscriber_email', default=None, help='Subscriber email')
@click.option('--metadata', default=None, help='Metadata as a JSON object')
@click.pass_obj
def trigger(settings, workflow_id, workflow_name, subscriber_id, subscriber_email, metadata):
    """Enroll a subscriber in a workflow"""
    try:
        metadata = json.loads(metadata) if metadata else None
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint='--metadata')

    async def _trigger(engine):
        return await engine.trigger(
            workflow_id=workflow_id,
            workflow_name=workflow_name,
            subscriber_id=subscriber_id,
            subscriber_email=subscriber_email,
            metadata=metadata
        )

    result = _run(settings, _trigger)
    click.echo(f"Execution {result.execution_id} next step at {result.next_step_at.isoformat()}")


@cli.command()
@click.option('--loop', is_flag=True, help='Keep polling until interrupted')
@click.option('--interval', default=None, type=float, help='Seconds between passes')
@click.pass_obj
def poll(settings, loop, interval):
    """Advance every due execution"""
    if interval is not None:
        settings.poll_interval_seconds = interval

    async def _poll(engine):
        if not loop:
            return await engine.run_due()

        await engine.scheduler.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await engine.scheduler.stop()

    try:
        summary = _run(settings, _poll)
    except KeyboardInterrupt:
        click.echo("Stopped")
        return
    click.echo(f"Processed {summary.processed} executions, {summary.errors} errors, {summary.skipped} skipped")


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
