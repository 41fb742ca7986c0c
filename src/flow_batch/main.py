"""CLI entrypoint for flow-batch."""

import logging
from pathlib import Path

import rich_click as click

from flow_batch import __version__
from flow_batch.scheduler.controllers import BatchCliController, BatchRunCommand
from flow_batch.scheduler.models import ExecutionMode, TimeoutPolicy

click.rich_click.USE_MARKDOWN = True
BATCH_CONTROLLER = BatchCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="flow-batch")
def flow_batch() -> None:
    """Batch executor for remote AI flows."""


@flow_batch.command("run")
@click.option("--flow-id", required=True, help="Remote flow to invoke for every task.")
@click.option(
    "--workspace-id",
    default=None,
    help="Workspace id. Defaults to `FLOW_BATCH_WORKSPACE_ID`.",
)
@click.option(
    "--input",
    "inputs",
    multiple=True,
    help="Task input text. Can be repeated, one task per value.",
)
@click.option(
    "--tasks-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help='JSON Lines file with `{"input": ..., "row": {...}, "filename": ...}` per line.',
)
@click.option(
    "--parallelism",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum number of concurrently running tasks.",
)
@click.option(
    "--mode",
    "execution_mode",
    type=click.Choice([mode.value for mode in ExecutionMode]),
    default=None,
    help="Remote execution mode.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Per-task timeout, counted in poll attempts.",
)
@click.option(
    "--timeout-policy",
    type=click.Choice([policy.value for policy in TimeoutPolicy]),
    default=None,
    help="What to do with a task that times out.",
)
@click.option(
    "--write-output/--no-write-output",
    default=None,
    help="Write each successful result to the output directory.",
)
@click.option(
    "--overwrite/--no-overwrite",
    "overwrite_existing",
    default=None,
    help="Overwrite existing output files instead of skipping their tasks.",
)
@click.option(
    "--output-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory for task outputs.",
)
@click.option(
    "--poll-interval",
    "poll_interval_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds between status checks. Defaults to `FLOW_BATCH_POLL_INTERVAL_SECONDS`.",
)
@click.option(
    "--echo",
    "use_echo",
    is_flag=True,
    default=False,
    help="Use the local echo client instead of the remote API.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def run_batch(  # noqa: PLR0913
    flow_id: str,
    workspace_id: str | None,
    inputs: tuple[str, ...],
    tasks_file: Path | None,
    parallelism: int | None,
    execution_mode: str | None,
    timeout_seconds: int | None,
    timeout_policy: str | None,
    write_output: bool | None,
    overwrite_existing: bool | None,
    output_dir: Path | None,
    poll_interval_seconds: float | None,
    use_echo: bool,
    log_level: str,
) -> None:
    """Run a batch of tasks against a remote flow and print their results."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        lines = BATCH_CONTROLLER.run_batch(
            BatchRunCommand(
                flow_id=flow_id,
                workspace_id=workspace_id,
                inputs=inputs,
                tasks_file=tasks_file,
                parallelism=parallelism,
                execution_mode=execution_mode,
                timeout_seconds=timeout_seconds,
                timeout_policy=timeout_policy,
                write_output=write_output,
                overwrite_existing=overwrite_existing,
                output_dir=output_dir,
                poll_interval_seconds=poll_interval_seconds,
                use_echo=use_echo,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    flow_batch()
