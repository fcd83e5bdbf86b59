import argparse
import asyncio
import json
import uuid
from typing import Any

from app.core.config import settings
from app.core.exceptions import LifecycleError
from app.core.logging_config import configure_logging
from app.db.session import SessionLocal
from app.services import asset_reaper, assets as assets_service, post_lifecycle


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str, sort_keys=True))


def _parse_uuid(raw: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(raw or "").strip())
    except ValueError:
        raise SystemExit(f"Invalid asset id: {raw!r}")


async def lifecycle_sweep() -> dict[str, int]:
    async with SessionLocal() as session:
        result = await post_lifecycle.run_sweep(session)
    return result.model_dump(by_alias=True)


async def lifecycle_stats() -> dict[str, int]:
    async with SessionLocal() as session:
        stats = await post_lifecycle.get_stats(session)
    return stats.model_dump(by_alias=True)


async def regenerate_derivatives(asset_id: uuid.UUID, profiles: list[str] | None) -> dict[str, Any]:
    async with SessionLocal() as session:
        asset = await assets_service.regenerate_derivatives(session, asset_id, profile_names=profiles)
        return assets_service.asset_to_upload_read(asset).model_dump(mode="json", by_alias=True)


async def reap_asset(asset_id: uuid.UUID) -> dict[str, Any]:
    async with SessionLocal() as session:
        summary = await asset_reaper.reap_asset(session, asset_id)
    return {
        "id": str(summary.asset_id),
        "outcome": summary.outcome.value,
        "removed": summary.removed,
        "missing": summary.missing,
    }


def _add_lifecycle_commands(subparsers) -> None:
    subparsers.add_parser("lifecycle-sweep", help="Run one expire/recount/purge sweep and print the counts")
    subparsers.add_parser("lifecycle-stats", help="Print active, expired and purge-eligible post counts")


def _add_asset_commands(subparsers) -> None:
    regen = subparsers.add_parser("regenerate-derivatives", help="Re-render stored derivatives for one asset")
    regen.add_argument("--asset-id", required=True, help="Asset id")
    regen.add_argument(
        "--profile",
        action="append",
        dest="profiles",
        help="Profile name to regenerate (repeatable; default: all configured profiles)",
    )

    reap = subparsers.add_parser("reap-asset", help="Delete an asset's original and derivative files")
    reap.add_argument("--asset-id", required=True, help="Asset id")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Feed content lifecycle utilities")
    subparsers = parser.add_subparsers(dest="command")
    _add_lifecycle_commands(subparsers)
    _add_asset_commands(subparsers)
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "lifecycle-sweep":
        _print_json(asyncio.run(lifecycle_sweep()))
        return True

    if args.command == "lifecycle-stats":
        _print_json(asyncio.run(lifecycle_stats()))
        return True

    if args.command == "regenerate-derivatives":
        _print_json(asyncio.run(regenerate_derivatives(_parse_uuid(args.asset_id), args.profiles)))
        return True

    if args.command == "reap-asset":
        _print_json(asyncio.run(reap_asset(_parse_uuid(args.asset_id))))
        return True

    return False


def main():
    configure_logging(settings.log_json)
    parser = _build_parser()
    args = parser.parse_args()
    try:
        handled = _run_cli_command(args)
    except LifecycleError as exc:
        raise SystemExit(f"{exc.code}: {exc.detail}")
    if not handled:
        parser.print_help()


if __name__ == "__main__":
    main()
