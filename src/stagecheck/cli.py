from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from rich.console import Console

from .config import ConfigError, load_config
from .errors import StagecheckError
from .gateway.http import HttpGateway
from .reconcile.counter import DailyCounterStore
from .reconcile.engine import ReconciliationEngine, pending_overview
from .reconcile.identifiers import IdentifierKind
from .session import SessionContext
from .stages import Stage, get_profile
from .utils.json_utils import read_json, write_json
from .utils.time import utc_now_iso

load_dotenv()  # automatically load variables from .env if present
console = Console()


def _load_config_or_exit(config_path: Path) -> Dict[str, Any]:
    try:
        return load_config(config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(2)
    except ConfigError as e:
        console.print(f"[red]Config error:[/red] {e}")
        sys.exit(2)


def _load_session_or_exit(cfg: Dict[str, Any]) -> SessionContext:
    path = Path(cfg["storage"]["session_path"])
    data = read_json(path)
    if not data:
        console.print(f"[red]Not logged in.[/red] Run `stagecheck login` first (no session at {path})")
        sys.exit(2)
    data.pop("logged_in_at", None)
    session = SessionContext.model_validate(data)
    if not session.token and cfg["api"].get("token"):
        session.token = cfg["api"]["token"]
    return session


def _gateway(cfg: Dict[str, Any], session: Optional[SessionContext] = None) -> HttpGateway:
    return HttpGateway.from_config(cfg, token=session.token if session else None)


def _build_engine(args: argparse.Namespace) -> ReconciliationEngine:
    cfg = _load_config_or_exit(Path(args.config or "config.yml"))
    session = _load_session_or_exit(cfg)
    return ReconciliationEngine(
        get_profile(args.stage),
        _gateway(cfg, session),
        session,
        counter=DailyCounterStore(Path(cfg["storage"]["counter_path"])),
    )


def _print_engine(engine: ReconciliationEngine) -> None:
    profile = engine.profile
    console.print(f"[bold]{profile.title}[/bold] {profile.identifier_field}: {engine.identifier or '-'}")
    console.print(f"[bold]State:[/bold] {engine.state.value}")
    if engine.active_pending_id:
        console.print(f"[bold]Pending record:[/bold] {engine.active_pending_id}")
    if engine.color and profile.identifier_kind is IdentifierKind.VIN:
        console.print(f"[bold]Color:[/bold] {engine.color}")
    if engine.ral:
        console.print(f"[bold]RAL:[/bold] {engine.ral}")
    for i, section in enumerate(engine.cache.sections):
        console.print(f"[cyan]{section.name}[/cyan] {engine.cache.progress(i)}%")
        for item in section.items:
            mark = "[green]x[/green]" if item.completed else " "
            console.print(f"  [{mark}] {item.label} [dim]({item.key})[/dim]")
    if engine.unreviewed_keys:
        console.print(f"[yellow]Not in saved record:[/yellow] {', '.join(engine.unreviewed_keys)}")
    console.print(f"[bold]Finished today:[/bold] {engine.daily_count}")
    if engine.error_message:
        console.print(f"[red]{engine.error_message}[/red]")


async def _prepare(engine: ReconciliationEngine, args: argparse.Namespace) -> None:
    # only the record of the requested identifier may be resumed
    await engine.open(resume=False)
    if engine.error_message:
        return
    await engine.enter_identifier(args.identifier)
    await engine.resume_matching()
    if getattr(args, "color", None):
        engine.set_color(args.color)
    if getattr(args, "ral", None):
        engine.set_ral(args.ral)
    if getattr(args, "all", False):
        engine.check_all()
    for key in getattr(args, "check", None) or []:
        if not engine.check(key):
            console.print(f"[yellow]Unknown check key:[/yellow] {key}")


def cmd_login(args: argparse.Namespace) -> int:
    cfg = _load_config_or_exit(Path(args.config or "config.yml"))
    password = args.password or console.input("Password: ", password=True)
    try:
        session = asyncio.run(_gateway(cfg).login(args.email, password))
    except StagecheckError as e:
        console.print(f"[red]Login failed:[/red] {e}")
        return 1
    path = Path(cfg["storage"]["session_path"])
    write_json(path, {**session.model_dump(), "logged_in_at": utc_now_iso()})
    console.print(f"[bold green]Logged in:[/bold green] {session.full_name or session.email} ({session.role})")
    return 0


def cmd_logout(args: argparse.Namespace) -> int:
    cfg = _load_config_or_exit(Path(args.config or "config.yml"))
    path = Path(cfg["storage"]["session_path"])
    if path.exists():
        path.unlink()
    console.print("[bold]Session ended.[/bold]")
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    cfg = _load_config_or_exit(Path(args.config or "config.yml"))
    try:
        ok = asyncio.run(_gateway(cfg).health())
    except StagecheckError as e:
        console.print(f"[red]API unreachable:[/red] {e}")
        return 1
    console.print("[bold green]API ok[/bold green]" if ok else "[yellow]API reports not ok[/yellow]")
    return 0 if ok else 1


def cmd_catalog(args: argparse.Namespace) -> int:
    engine = _build_engine(args)
    asyncio.run(engine.load_catalog())
    if engine.error_message:
        console.print(f"[red]{engine.error_message}[/red]")
        return 1
    for section in engine.cache.sections:
        console.print(f"[cyan]{section.name}[/cyan] ({section.total})")
        for item in section.items:
            console.print(f"  {item.label} [dim]({item.key})[/dim]")
    return 0


def cmd_pending(args: argparse.Namespace) -> int:
    cfg = _load_config_or_exit(Path(args.config or "config.yml"))
    session = _load_session_or_exit(cfg)
    try:
        items = asyncio.run(pending_overview(_gateway(cfg, session), session))
    except StagecheckError as e:
        console.print(f"[red]Could not list pending tasks:[/red] {e}")
        return 1
    if not items:
        console.print("[bold]No pending tasks.[/bold]")
        return 0
    for item in items:
        label = item.vin or item.color or "-"
        extra = f" RAL {item.ral}" if item.ral else ""
        console.print(
            f"{item.stage.value:<11} #{item.record_id:<6} {label}{extra}  "
            f"{item.progress_label:>4}  [dim]{item.started_at or ''}[/dim]"
        )
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    engine = _build_engine(args)
    asyncio.run(_prepare(engine, args))
    _print_engine(engine)
    return 1 if engine.error_message else 0


def cmd_finish(args: argparse.Namespace) -> int:
    engine = _build_engine(args)

    async def _run() -> Optional[int]:
        await _prepare(engine, args)
        if engine.error_message or not engine.can_finish:
            return None
        return await engine.finish()

    try:
        record_id = asyncio.run(_run())
    except StagecheckError as e:
        console.print(f"[red]Finish failed:[/red] {e}")
        return 1
    if record_id is None:
        _print_engine(engine)
        console.print("[yellow]Task is not ready to finish.[/yellow]")
        return 1
    console.print(f"[bold green]Finished record:[/bold green] {record_id} (today: {engine.daily_count})")
    return 0


def cmd_save(args: argparse.Namespace) -> int:
    engine = _build_engine(args)

    async def _run() -> Optional[bool]:
        await _prepare(engine, args)
        if engine.error_message or not engine.should_prompt_on_leave:
            return None
        await engine.save_and_leave("home")
        return engine.error_message is None

    try:
        saved = asyncio.run(_run())
    except StagecheckError as e:
        console.print(f"[red]Save failed:[/red] {e}")
        return 1
    if saved is None:
        _print_engine(engine)
        console.print("[yellow]Nothing to save.[/yellow]")
        return 1
    if not saved:
        console.print(f"[yellow]{engine.error_message}[/yellow]")
        return 1
    console.print("[bold green]Progress saved as pending.[/bold green]")
    return 0


def _add_task_args(p: argparse.ArgumentParser, checks: bool = True) -> None:
    p.add_argument("--config", type=str, default="config.yml", help="Path to config.yml")
    p.add_argument("--stage", type=str, required=True, choices=[s.value for s in Stage], help="Stage")
    p.add_argument("--identifier", type=str, required=True, help="VIN or color, depending on the stage")
    if not checks:
        return
    group = p.add_mutually_exclusive_group()
    group.add_argument("--check", action="append", metavar="KEY", help="Column key to mark done (repeatable)")
    group.add_argument("--all", action="store_true", help="Mark every checklist item done")
    p.add_argument("--color", type=str, help="Color for VIN-identified stages")
    p.add_argument("--ral", type=str, help="RAL code (paint stage)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stagecheck",
        description="Stage checklist tracking CLI.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_login = sub.add_parser("login", help="Authenticate and store the session")
    p_login.add_argument("--config", type=str, default="config.yml", help="Path to config.yml")
    p_login.add_argument("--email", type=str, required=True, help="Operator email")
    p_login.add_argument("--password", type=str, help="Password (prompted when omitted)")
    p_login.set_defaults(func=cmd_login)

    p_logout = sub.add_parser("logout", help="Forget the stored session")
    p_logout.add_argument("--config", type=str, default="config.yml", help="Path to config.yml")
    p_logout.set_defaults(func=cmd_logout)

    p_health = sub.add_parser("health", help="Check API availability")
    p_health.add_argument("--config", type=str, default="config.yml", help="Path to config.yml")
    p_health.set_defaults(func=cmd_health)

    p_catalog = sub.add_parser("catalog", help="Show the checklist of a stage")
    p_catalog.add_argument("--config", type=str, default="config.yml", help="Path to config.yml")
    p_catalog.add_argument("--stage", type=str, required=True, choices=[s.value for s in Stage], help="Stage")
    p_catalog.set_defaults(func=cmd_catalog)

    p_pending = sub.add_parser("pending", help="List your pending tasks across stages")
    p_pending.add_argument("--config", type=str, default="config.yml", help="Path to config.yml")
    p_pending.set_defaults(func=cmd_pending)

    p_status = sub.add_parser("status", help="Check an identifier and show its checklist")
    _add_task_args(p_status, checks=False)
    p_status.set_defaults(func=cmd_status)

    p_finish = sub.add_parser("finish", help="Mark checks and finalize the task")
    _add_task_args(p_finish)
    p_finish.set_defaults(func=cmd_finish)

    p_save = sub.add_parser("save", help="Mark checks and save the task as pending")
    _add_task_args(p_save)
    p_save.set_defaults(func=cmd_save)

    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"[red]Unexpected error:[/red] {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
