"""queries CLI entrypoint."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import IO, Any, Callable

import click

from queries.client import events as ev
from queries.client.active import ActiveConnection, ConnectionState
from queries.client.conn import ConnURI
from queries.client.loop import EventLoop
from queries.client.schedule import Interval
from queries.client.settings import SettingsStore
from queries.report.template import TemplateMode, render_report_file
from queries.shared.cli import (
    CLIContext,
    common_cli_options,
    connection_options,
    handle_cli_errors,
    pass_cli_context,
)
from queries.shared.config import ExecutionSettings
from queries.sql.output import StatementOutput, Valid, condense_errors, first_error

from . import render

# Upper bound on how long the CLI waits for one script; statement timeouts normally end it sooner.
EXECUTION_WAIT_SECS = 600.0
CONNECT_GRACE_SECS = 5.0


@click.group(help="Run SQL scripts against PostgreSQL or SQLite databases.")
@common_cli_options
@handle_cli_errors
def cli(cli_ctx: CLIContext) -> None:
    """Primary Click group for queries commands."""
    cli_ctx.logger.debug("queries group initialised.")


@cli.command("run")
@click.argument("script", type=click.File("r"))
@connection_options
@click.option(
    "-p",
    "--param",
    "params",
    multiple=True,
    metavar="KEY=VALUE",
    help="Substitute ${KEY} in the script.",
)
@click.option("--limit", type=int, help="Override the row limit injected into SELECT statements.")
@click.option("--timeout", type=int, help="Override the per-statement timeout in seconds.")
@click.option("--accept-dml", is_flag=True, help="Allow UPDATE and DELETE statements.")
@click.option("--accept-ddl", is_flag=True, help="Allow ALTER, DROP and TRUNCATE statements.")
@click.option("--plan", is_flag=True, help="Show the query plan of every SELECT instead of running it.")
@click.option(
    "--format",
    "output_format",
    default="table",
    show_default=True,
    type=click.Choice(render.OUTPUT_FORMAT_CHOICES),
)
@pass_cli_context
@handle_cli_errors
def run_script(
    cli_ctx: CLIContext,
    script: IO[str],
    uri: str,
    password: str | None,
    params: Iterable[str],
    limit: int | None,
    timeout: int | None,
    accept_dml: bool,
    accept_ddl: bool,
    plan: bool,
    output_format: str,
) -> None:
    """Execute every statement of SCRIPT (a file, or - for stdin)."""
    _log_subcommand_entry(cli_ctx, "run")
    text = script.read()
    if not text.strip():
        raise click.ClickException("Script must not be empty.")
    try:
        substitutions = _parse_params(params)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    settings = _settings_for_command(cli_ctx, limit=limit, timeout=timeout, accept_dml=accept_dml, accept_ddl=accept_ddl)
    with ConsoleSession(cli_ctx, settings) as session:
        session.connect(_build_uri(cli_ctx, uri, password))
        outputs = session.execute(text, substitutions, plan=plan)

    _render_outputs(cli_ctx, outputs, output_format)
    _exit_on_error(outputs)


@cli.command("schema")
@connection_options
@click.option(
    "--format",
    "output_format",
    default="table",
    show_default=True,
    type=click.Choice(render.SCHEMA_FORMAT_CHOICES),
)
@pass_cli_context
@handle_cli_errors
def show_schema(cli_ctx: CLIContext, uri: str, password: str | None, output_format: str) -> None:
    """Display tables, views and functions of the database (dot: ER diagram)."""
    _log_subcommand_entry(cli_ctx, "schema")
    with ConsoleSession(cli_ctx, cli_ctx.config.execution) as session:
        session.connect(_build_uri(cli_ctx, uri, password))
        info = session.wait_for_schema()
    render.render_schema(info, output_format=output_format, logger=cli_ctx.logger)


@cli.command("watch")
@click.argument("script", type=click.File("r"))
@connection_options
@click.option("--interval", type=click.IntRange(min=1), help="Seconds between runs (defaults to the configured interval).")
@click.option("--count", type=click.IntRange(min=1), default=3, show_default=True, help="Number of runs.")
@click.option(
    "--format",
    "output_format",
    default="table",
    show_default=True,
    type=click.Choice(render.OUTPUT_FORMAT_CHOICES),
)
@pass_cli_context
@handle_cli_errors
def watch_script(
    cli_ctx: CLIContext,
    script: IO[str],
    uri: str,
    password: str | None,
    interval: int | None,
    count: int,
    output_format: str,
) -> None:
    """Re-run SCRIPT on a fixed interval, COUNT times in total."""
    _log_subcommand_entry(cli_ctx, "watch")
    text = script.read()
    if not text.strip():
        raise click.ClickException("Script must not be empty.")
    settings = cli_ctx.config.execution
    period = interval or settings.schedule_interval_secs

    with ConsoleSession(cli_ctx, settings) as session:
        session.connect(_build_uri(cli_ctx, uri, password))
        session.on_result = lambda outputs: _render_outputs(cli_ctx, outputs, output_format)
        session.execute(text, {})
        if count > 1:
            session.schedule(Interval(period))
            session.wait_for_results(count, timeout=period * count + EXECUTION_WAIT_SECS)


@cli.command("report")
@click.argument("template", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("script", type=click.File("r"))
@connection_options
@click.option("--output", "output_path", type=click.Path(dir_okay=False, path_type=Path), help="Write the report here.")
@pass_cli_context
@handle_cli_errors
def make_report(
    cli_ctx: CLIContext,
    template: Path,
    script: IO[str],
    uri: str,
    password: str | None,
    output_path: Path | None,
) -> None:
    """Fill TEMPLATE (.html or .fodt) with the first result table of SCRIPT."""
    _log_subcommand_entry(cli_ctx, "report")
    TemplateMode.for_path(template)
    with ConsoleSession(cli_ctx, cli_ctx.config.execution) as session:
        session.connect(_build_uri(cli_ctx, uri, password))
        outputs = session.execute(script.read(), {})

    if first_error(outputs) is not None:
        raise click.ClickException(condense_errors(outputs) or "Script failed.")
    table = next((output.table for output in outputs if isinstance(output, Valid)), None)
    if table is None:
        raise click.ClickException("Script did not return a table.")
    report = render_report_file(template, table, output_path)
    if output_path is None:
        click.echo(report.document)
    else:
        cli_ctx.logger.success(f"Report written to {output_path}")
    for href, _payload in report.plots:
        cli_ctx.logger.info(f"Plot referenced as {href}")


class ConsoleSession:
    """Drives an ActiveConnection synchronously for one command invocation."""

    def __init__(self, cli_ctx: CLIContext, settings: ExecutionSettings) -> None:
        connection = cli_ctx.config.connection
        self.logger = cli_ctx.logger
        self.loop = EventLoop()
        self.active = ActiveConnection(
            self.loop,
            SettingsStore(settings),
            connect_timeout=connection.connect_timeout_secs,
            application_name=connection.application_name,
        )
        self.connect_timeout = connection.connect_timeout_secs
        self.on_result: Callable[[list[StatementOutput]], None] | None = None
        self._results: list[list[StatementOutput]] = []
        self._failure: str | None = None
        self._schema: ev.SchemaUpdated | None = None
        self.active.connect_exec_result(self._record_result)
        self.active.connect_conn_failure(lambda event: self._fail(event.message))
        self.active.connect_error(lambda event: self._fail(event.message))
        self.active.connect_disconnected(self._record_disconnect)
        self.active.connect_schema_update(self._record_schema)

    def __enter__(self) -> ConsoleSession:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _record_result(self, event: ev.ExecutionCompleted) -> None:
        self._results.append(event.results)
        if self.on_result is not None:
            self.on_result(event.results)

    def _record_schema(self, event: ev.SchemaUpdated) -> None:
        self._schema = event

    def _record_disconnect(self, event: ev.Disconnected) -> None:
        if event.reason:
            self._fail(event.reason)

    def _fail(self, message: str) -> None:
        self._failure = message

    def _raise_failure(self) -> None:
        if self._failure is not None:
            message, self._failure = self._failure, None
            raise click.ClickException(message)

    def connect(self, uri: ConnURI) -> None:
        self.logger.debug(f"Connecting to {uri}")
        self.active.connect(uri)
        self.loop.run_until(
            lambda: self.active.state is ConnectionState.CONNECTED or self._failure is not None,
            timeout=self.connect_timeout + CONNECT_GRACE_SECS,
        )
        self._raise_failure()
        if self.active.state is not ConnectionState.CONNECTED:
            raise click.ClickException("Timed out while connecting.")

    def execute(self, script: str, substitutions: dict[str, str], *, plan: bool = False) -> list[StatementOutput]:
        self.active.execute(script, substitutions, plan=plan)
        self.wait_for_results(len(self._results) + 1, timeout=EXECUTION_WAIT_SECS)
        return self._results[-1]

    def schedule(self, schedule: Any) -> None:
        self.active.set_schedule(schedule)

    def wait_for_results(self, count: int, *, timeout: float) -> None:
        self.loop.run_until(lambda: len(self._results) >= count or self._failure is not None, timeout=timeout)
        self._raise_failure()
        if len(self._results) < count:
            raise click.ClickException("Timed out waiting for the script to finish.")

    def wait_for_schema(self) -> Any:
        self.loop.run_until(lambda: self._schema is not None or self._failure is not None, timeout=EXECUTION_WAIT_SECS)
        self._raise_failure()
        if self._schema is None:
            raise click.ClickException("Timed out while reading the schema.")
        return self._schema.info

    def close(self) -> None:
        self.active.disconnect()
        self.loop.run_pending()


def _log_subcommand_entry(cli_ctx: CLIContext, command: str) -> None:
    cli_ctx.logger.debug(f"queries {command} invoked")


def _parse_params(pairs: Iterable[str]) -> dict[str, str]:
    """Convert KEY=VALUE CLI options into a dictionary."""
    parsed: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Parameter '{pair}' must be in KEY=VALUE format.")
        key, value = pair.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Parameter keys cannot be empty.")
        parsed[key] = value
    return parsed


def _settings_for_command(
    cli_ctx: CLIContext,
    *,
    limit: int | None,
    timeout: int | None,
    accept_dml: bool,
    accept_ddl: bool,
) -> ExecutionSettings:
    """Return the configured execution settings with command-line overrides applied."""
    changes: dict[str, Any] = {}
    if limit is not None:
        changes["row_limit"] = limit
    if timeout is not None:
        changes["timeout_secs"] = timeout
    if accept_dml:
        changes["accept_dml"] = True
    if accept_ddl:
        changes["accept_ddl"] = True
    return cli_ctx.config.execution.with_changes(**changes)


def _build_uri(cli_ctx: CLIContext, uri: str, password: str | None) -> ConnURI:
    return ConnURI.parse(uri, password, application_name=cli_ctx.config.connection.application_name)


def _render_outputs(cli_ctx: CLIContext, outputs: list[StatementOutput], output_format: str) -> None:
    render.render_outputs(
        outputs,
        output_format=output_format,
        logger=cli_ctx.logger,
        precision=cli_ctx.config.report.float_precision,
    )


def _exit_on_error(outputs: list[StatementOutput]) -> None:
    if first_error(outputs) is not None:
        raise click.exceptions.Exit(1)


def main() -> None:
    """Entry point for console_scripts."""
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
