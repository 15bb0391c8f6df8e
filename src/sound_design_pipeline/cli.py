from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from sound_design_pipeline.config import get_safe_config_report, get_settings
from sound_design_pipeline.jobs.models import Job
from sound_design_pipeline.jobs.snapshot import JobSnapshotStore
from sound_design_pipeline.utils.log import set_log_level


class DefaultGroup(click.Group):
    """
    Click group with a default command, so a bare `sound-design` starts the server.
    """

    def __init__(self, *args, default_cmd: str = "serve", **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.default_cmd = str(default_cmd)

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        if not args or (args[0] not in self.commands and args[0] not in {"--help", "-h"}):
            args.insert(0, self.default_cmd)
        return super().parse_args(ctx, args)


def _store(state_dir: Path | None) -> JobSnapshotStore:
    root = Path(state_dir) if state_dir else get_settings().public.resolved_state_dir()
    return JobSnapshotStore(root)


def _load(store: JobSnapshotStore, job_id: str) -> Job:
    raw = store.read(job_id)
    if raw is None:
        raise click.ClickException(f"job not found: {job_id}")
    return Job.from_dict(raw)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False))


cli = DefaultGroup(name="sound-design", help="Sound design pipeline server and job inspection")

_state_dir_opt = click.option(
    "--state-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Job snapshot directory (default: SOUND_DESIGN_STATE_DIR)",
)


@cli.command()
@click.option("--host", default=None, help="Bind host (default: HOST)")
@click.option("--port", type=int, default=None, help="Bind port (default: PORT)")
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
def serve(host: str | None, port: int | None, log_level: str | None) -> None:
    """Run the HTTP API."""
    import uvicorn

    from sound_design_pipeline.web.app import create_app

    s = get_settings()
    if log_level:
        set_log_level(log_level)
    uvicorn.run(
        create_app(),
        host=host or s.host,
        port=int(port or s.port),
        log_config=None,
    )


@cli.group()
def jobs() -> None:
    """Inspect persisted jobs (read-only)."""


@jobs.command("list")
@_state_dir_opt
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
def jobs_list(state_dir: Path | None, as_json: bool) -> None:
    store = _store(state_dir)
    items = []
    for raw in store.iter_snapshots():
        try:
            items.append(Job.from_dict(raw).summary())
        except Exception as ex:
            click.echo(f"skipping {raw.get('id')}: {ex}", err=True)
    items.sort(key=lambda j: j["created_at"], reverse=True)
    if as_json:
        _echo_json(items)
        return
    if not items:
        click.echo("no jobs")
        return
    for j in items:
        last = j.get("last_event") or {}
        click.echo(
            f"{j['id']}  {j['status']:<9}  {j['created_at']}  "
            f"{float(last.get('progress') or 0.0):>5.0%}  {last.get('message', '')}"
        )


@jobs.command("show")
@click.argument("job_id")
@_state_dir_opt
def jobs_show(job_id: str, state_dir: Path | None) -> None:
    job = _load(_store(state_dir), job_id)
    out = job.summary()
    out["video_path"] = job.video_path
    out["options"] = job.options
    if job.result:
        out["tracks"] = job.result.get("tracks") or []
        out["report"] = (job.result.get("report") or {}).get("stats")
    _echo_json(out)


@jobs.command("events")
@click.argument("job_id")
@click.option("--after", type=int, default=None, help="Only events after this index")
@_state_dir_opt
def jobs_events(job_id: str, after: int | None, state_dir: Path | None) -> None:
    job = _load(_store(state_dir), job_id)
    for ev in job.events.after(after):
        click.echo(f"{ev.id}\t{ev.ts}\t{json.dumps(ev.data.to_dict(), ensure_ascii=False)}")


@cli.command("config")
def config_cmd() -> None:
    """Print the effective configuration (secrets masked)."""
    _echo_json(get_safe_config_report())


def main(argv: list[str] | None = None) -> int:
    try:
        cli.main(args=argv, standalone_mode=False)
    except click.ClickException as ex:
        ex.show()
        return int(ex.exit_code)
    except click.exceptions.Abort:
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
