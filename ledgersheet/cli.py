"""
CLI interface for ledgersheet.

Provides commands to define datasets, run them into the spreadsheet,
inspect jobs and manage recurring schedules.

Scheduled runs are driven by `ledgersheet schedule fire <trigger_id>`,
which is what an external timer (cron, systemd) invokes for each trigger.
"""

import json
from pathlib import Path
from typing import Any, Optional

import click
import yaml
from rich.table import Table

from ledgersheet import __version__
from ledgersheet.config import get_ledgersheet_home, load_config
from ledgersheet.errors import LedgersheetError
from ledgersheet.query_parser import parse_query
from ledgersheet.runtime import Runtime, build_runtime
from ledgersheet.schemas import (
    DAYS_OF_WEEK,
    Dataset,
    DatasetType,
    Frequency,
    JobStatus,
    Pagination,
    Schedule,
    Target,
)
from ledgersheet.utils import (
    console,
    format_duration,
    print_error,
    print_success,
    print_warning,
    setup_logging,
)


def _fail(message: str) -> None:
    print_error(message)
    raise SystemExit(1)


def _runtime(ctx: click.Context) -> Runtime:
    """Build the runtime once per invocation."""
    if "runtime" in ctx.obj:
        return ctx.obj["runtime"]
    if "config" not in ctx.obj:
        print_error(f"Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}")
        click.echo("Run 'ledgersheet init' to create a configuration file.", err=True)
        raise SystemExit(1)
    try:
        runtime = build_runtime(ctx.obj["config"])
    except LedgersheetError as e:
        _fail(str(e))
    ctx.obj["runtime"] = runtime
    ctx.call_on_close(runtime.close)
    return runtime


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _target_from_options(
    sheet: Optional[str],
    anchor: str,
    named_range: Optional[str],
    no_resize: bool,
) -> Target:
    return Target(
        sheet_name=sheet or "",
        anchor_cell=anchor,
        allow_resize=not no_resize,
        named_range=named_range,
    )


@click.group()
@click.version_option(version=__version__, prog_name="ledgersheet")
@click.option("-v", "--verbose", is_flag=True, help="Log to the console")
@click.pass_context
def main(ctx, verbose: bool):
    """
    ledgersheet - Run accounting reports and queries into a spreadsheet.

    Define datasets, run them on demand or on a schedule, and keep each
    result at a stable location in the document.
    """
    ctx.ensure_object(dict)
    try:
        config = load_config()
    except (FileNotFoundError, LedgersheetError) as e:
        # init does not need a config; other commands report this later
        ctx.obj["config_error"] = str(e)
        return

    ctx.obj["config"] = config
    setup_logging(
        log_file=Path(config.log_file).expanduser() if config.log_file else None,
        log_level=config.log_level,
        log_format=config.log_format,
        console_output=verbose,
    )


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize ledgersheet configuration."""
    home = get_ledgersheet_home()
    home.mkdir(parents=True, exist_ok=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = {
        "environment": "sandbox",
        "minor_version": "75",
        "store_path": str(home / "store.json"),
        "spreadsheet_id": "",
        "service_account_path": "",
        "env_file": str(home / ".env"),
        "log_level": "INFO",
        "log_format": "structured",
        "log_file": str(home / "ledgersheet.log"),
    }
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# LEDGERSHEET_QBO_CLIENT_ID=...\n# LEDGERSHEET_QBO_CLIENT_SECRET=...\n")

    click.echo(f"Initialized ledgersheet config at {cfg_path}")


# =============================================================================
# Auth Commands - persist what the consent flow produced
# =============================================================================

@main.group("auth")
def auth_group():
    """Inspect and store connection credentials."""
    pass


@auth_group.command("status")
@click.pass_context
def auth_status(ctx):
    """Show the connection state (secrets masked)."""
    _echo_json(_runtime(ctx).session.status())


@auth_group.command("credentials")
@click.argument("client_id")
@click.argument("client_secret")
@click.option("--environment", type=click.Choice(["sandbox", "production"]), default="sandbox")
@click.pass_context
def auth_credentials(ctx, client_id: str, client_secret: str, environment: str):
    """Store OAuth client credentials. Disconnects the current company."""
    _runtime(ctx).session.sessions.save_credentials(client_id, client_secret, environment)
    print_success(f"Saved {environment} credentials")


@auth_group.command("connect")
@click.option("--realm-id", required=True, help="Connected company id")
@click.option("--refresh-token", required=True, help="Refresh token from the consent flow")
@click.option("--company-name", default=None)
@click.pass_context
def auth_connect(ctx, realm_id: str, refresh_token: str, company_name: Optional[str]):
    """Connect a company from a refresh token and fetch an access token."""
    session = _runtime(ctx).session
    session.sessions.connect(realm_id, company_name)
    session.sessions.save_tokens({"refresh_token": refresh_token})
    try:
        session.refresh()
    except LedgersheetError as e:
        _fail(str(e))
    print_success(f"Connected company {realm_id}")


# =============================================================================
# Dataset Commands
# =============================================================================

@main.group("datasets")
def datasets_group():
    """Define and inspect datasets."""
    pass


def _dataset_row(dataset: Dataset) -> dict[str, Any]:
    return {
        "id": dataset.id,
        "type": dataset.type.value,
        "name": dataset.name,
        "target": f"{dataset.target.sheet_name or dataset.default_sheet_name}!{dataset.target.anchor_cell}",
        "schedule": dataset.schedule.describe() if dataset.schedule.enabled else "",
        "last_write": dataset.last_write.range_a1 if dataset.last_write else "",
    }


@datasets_group.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def list_datasets(ctx, as_json: bool):
    """List datasets."""
    datasets = _runtime(ctx).registry.list()
    rows = [_dataset_row(d) for d in datasets]
    if as_json:
        _echo_json(rows)
        return
    if not rows:
        click.echo("No datasets defined.")
        return

    table = Table(title="Datasets")
    for column in ("ID", "Type", "Name", "Target", "Schedule", "Last write"):
        table.add_column(column)
    for row in rows:
        table.add_row(*(str(v) for v in row.values()))
    console.print(table)


@datasets_group.command("show")
@click.argument("dataset_id")
@click.pass_context
def show_dataset(ctx, dataset_id: str):
    """Show a dataset definition."""
    try:
        dataset = _runtime(ctx).registry.get(dataset_id)
    except LedgersheetError as e:
        _fail(str(e))
    _echo_json(dataset.to_dict())


@datasets_group.command("add-query")
@click.argument("name")
@click.argument("query")
@click.option("--sheet", help="Target sheet name (default QBO_<name>)")
@click.option("--anchor", default="A1", show_default=True, help="Top-left cell")
@click.option("--named-range", help="Alias kept pointing at the latest output")
@click.option("--no-resize", is_flag=True, help="Fail instead of growing the sheet grid")
@click.option("--start-position", type=int, default=None, help="First row to fetch (1-based)")
@click.option("--max-results", type=int, default=None, help="Page size (1-1000)")
@click.option("--single-page", is_flag=True, help="Fetch one page only")
@click.option("--max-pages", type=int, default=None, help="Stop after this many pages")
@click.pass_context
def add_query(
    ctx,
    name: str,
    query: str,
    sheet: Optional[str],
    anchor: str,
    named_range: Optional[str],
    no_resize: bool,
    start_position: Optional[int],
    max_results: Optional[int],
    single_page: bool,
    max_pages: Optional[int],
):
    """Add a read-query dataset.

    Example:

        ledgersheet datasets add-query Customers "SELECT * FROM Customer"
    """
    pagination = None
    if start_position or max_results or single_page or max_pages:
        parsed = parse_query(query)
        pagination = Pagination(
            start_position=start_position or parsed.start_position or 1,
            max_results=max_results or parsed.max_results or 1000,
            fetch_all=not single_page,
            max_pages=max_pages,
        )
    try:
        dataset = _runtime(ctx).registry.create(
            DatasetType.QUERY,
            name,
            {"query": query},
            target=_target_from_options(sheet, anchor, named_range, no_resize),
            pagination=pagination,
        )
    except LedgersheetError as e:
        _fail(str(e))
    print_success(f"Created dataset {dataset.id} ({dataset.name})")


@datasets_group.command("add-report")
@click.argument("name")
@click.argument("report_name")
@click.option("--start-date", help="YYYY-MM-DD")
@click.option("--end-date", help="YYYY-MM-DD")
@click.option("--date-macro", help="e.g. 'This Fiscal Year-to-date'")
@click.option("--accounting-method", type=click.Choice(["Cash", "Accrual"]))
@click.option("--summarize-column-by", help="e.g. Month, Total")
@click.option("--sheet", help="Target sheet name (default QBO_<name>)")
@click.option("--anchor", default="A1", show_default=True, help="Top-left cell")
@click.option("--named-range", help="Alias kept pointing at the latest output")
@click.option("--no-resize", is_flag=True, help="Fail instead of growing the sheet grid")
@click.pass_context
def add_report(
    ctx,
    name: str,
    report_name: str,
    start_date: Optional[str],
    end_date: Optional[str],
    date_macro: Optional[str],
    accounting_method: Optional[str],
    summarize_column_by: Optional[str],
    sheet: Optional[str],
    anchor: str,
    named_range: Optional[str],
    no_resize: bool,
):
    """Add a standard report dataset.

    Example:

        ledgersheet datasets add-report PnL ProfitAndLoss --date-macro "Last Month"
    """
    filters = {
        "start_date": start_date,
        "end_date": end_date,
        "date_macro": date_macro,
        "accounting_method": accounting_method,
        "summarize_column_by": summarize_column_by,
    }
    try:
        dataset = _runtime(ctx).registry.create(
            DatasetType.STANDARD,
            name,
            {"report_name": report_name, "filters": {k: v for k, v in filters.items() if v}},
            target=_target_from_options(sheet, anchor, named_range, no_resize),
        )
    except LedgersheetError as e:
        _fail(str(e))
    print_success(f"Created dataset {dataset.id} ({dataset.name})")


@datasets_group.command("remove")
@click.argument("dataset_id")
@click.pass_context
def remove_dataset(ctx, dataset_id: str):
    """Delete a dataset and its schedule trigger."""
    try:
        dataset = _runtime(ctx).scheduler.remove_dataset(dataset_id)
    except LedgersheetError as e:
        _fail(str(e))
    print_success(f"Removed dataset {dataset.id} ({dataset.name})")


# =============================================================================
# Run Commands
# =============================================================================

def _report_job(job, as_json: bool) -> None:
    if as_json:
        _echo_json(job.to_dict())
    elif job.status == JobStatus.COMPLETED:
        result = job.result or {}
        print_success(
            f"{job.dataset_id} completed: {result.get('rows')} x {result.get('cols')} "
            f"-> '{result.get('sheet_name')}'!{result.get('range_a1')} "
            f"in {format_duration(result.get('duration_ms'))}"
        )
        for warning in result.get("warnings", []):
            print_warning(warning)
        if result.get("schema_changed"):
            print_warning("Column layout changed since the last run")
        if result.get("has_more"):
            print_warning(f"More rows available from position {result.get('next_start_position')}")
    else:
        print_error(f"{job.dataset_id} failed: {job.error}")


@main.command("run")
@click.argument("dataset_id")
@click.option("--json", "as_json", is_flag=True, help="Output the job record as JSON")
@click.pass_context
def run(ctx, dataset_id: str, as_json: bool):
    """Run one dataset now."""
    try:
        job = _runtime(ctx).runner.run(dataset_id)
    except LedgersheetError as e:
        _fail(str(e))
    _report_job(job, as_json)
    if job.status != JobStatus.COMPLETED:
        raise SystemExit(1)


@main.command("run-all")
@click.option("--scheduled-only", is_flag=True, help="Only datasets with an enabled schedule")
@click.pass_context
def run_all(ctx, scheduled_only: bool):
    """Run every dataset, one after another."""
    jobs = _runtime(ctx).runner.run_all(scheduled_only=scheduled_only)
    if not jobs:
        click.echo("No datasets to run.")
        return
    for job in jobs:
        _report_job(job, as_json=False)
    if any(job.status != JobStatus.COMPLETED for job in jobs):
        raise SystemExit(1)


@main.command("job")
@click.argument("job_id")
@click.pass_context
def show_job(ctx, job_id: str):
    """Show a job's status and progress."""
    try:
        job = _runtime(ctx).runner.get_job(job_id)
    except LedgersheetError as e:
        _fail(str(e))
    _echo_json(job.to_dict())


@main.command("parse")
@click.argument("query")
def parse(query: str):
    """Validate a read-query without calling the service."""
    parsed = parse_query(query)
    if not parsed.valid:
        _fail(f"Invalid query: {parsed.error}")
    _echo_json({
        "valid": True,
        "select": parsed.select,
        "from": parsed.entity,
        "where": parsed.where,
        "order_by": parsed.order_by,
        "start_position": parsed.start_position,
        "max_results": parsed.max_results,
    })


# =============================================================================
# Schedule Commands
# =============================================================================

@main.group("schedule")
def schedule_group():
    """Manage recurring runs."""
    pass


@schedule_group.command("enable")
@click.argument("dataset_id")
@click.option("--freq", type=click.Choice([f.value for f in Frequency]), default="daily", show_default=True)
@click.option("--time", "time_of_day", help="HH:MM (not needed for hourly)")
@click.option("--day-of-week", type=click.Choice(DAYS_OF_WEEK, case_sensitive=False))
@click.option("--day-of-month", type=click.IntRange(1, 31))
@click.pass_context
def schedule_enable(
    ctx,
    dataset_id: str,
    freq: str,
    time_of_day: Optional[str],
    day_of_week: Optional[str],
    day_of_month: Optional[int],
):
    """Enable a recurring schedule for a dataset."""
    schedule = Schedule(
        enabled=True,
        freq=Frequency(freq),
        time_of_day=time_of_day,
        day_of_week=day_of_week.upper() if day_of_week else None,
        day_of_month=day_of_month,
    )
    try:
        dataset = _runtime(ctx).scheduler.enable(dataset_id, schedule)
    except LedgersheetError as e:
        _fail(str(e))
    print_success(f"{dataset.id} scheduled {dataset.schedule.describe()}")


@schedule_group.command("disable")
@click.argument("dataset_id")
@click.pass_context
def schedule_disable(ctx, dataset_id: str):
    """Disable a dataset's schedule."""
    try:
        dataset = _runtime(ctx).scheduler.disable(dataset_id)
    except LedgersheetError as e:
        _fail(str(e))
    print_success(f"{dataset.id} schedule disabled")


@schedule_group.command("fire")
@click.argument("trigger_id")
@click.pass_context
def schedule_fire(ctx, trigger_id: str):
    """Handle a trigger firing (invoked by an external timer)."""
    outcome = _runtime(ctx).scheduler.handle_trigger_fire(trigger_id)
    _echo_json(outcome.to_dict())


@schedule_group.command("reconcile")
@click.pass_context
def schedule_reconcile(ctx):
    """Repair missing, stale and orphaned triggers."""
    report = _runtime(ctx).scheduler.reconcile()
    if not report.changed and not report.errors:
        click.echo("Triggers are consistent.")
        return
    for dataset_id, trigger_id in report.created:
        print_success(f"Created {trigger_id} for {dataset_id}")
    for trigger_id in report.deleted:
        print_warning(f"Deleted {trigger_id}")
    for error in report.errors:
        print_error(error)


@schedule_group.command("status")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def schedule_status(ctx, as_json: bool):
    """Show schedules and trigger headroom."""
    scheduler = _runtime(ctx).scheduler
    rows = scheduler.status()
    quota = scheduler.quota()
    if as_json:
        _echo_json({"datasets": rows, "quota": quota})
        return

    table = Table(title="Schedules")
    for column in ("Dataset", "Name", "Schedule", "Trigger"):
        table.add_column(column)
    for row in rows:
        table.add_row(row["dataset_id"], row["name"], row["schedule"] or "-", row["trigger_id"] or "-")
    console.print(table)
    click.echo(f"Triggers: {quota['used']}/{quota['limit']} used, {quota['remaining']} remaining")
    if quota["limit_exceeded"]:
        print_warning("Trigger limit reached")


if __name__ == "__main__":
    main()
