"""
CLI for ERP Sync.

Provides commands for:
  - Generating configuration templates and encryption keys
  - Re-encrypting stored credentials after a key rotation
  - Managing integrations (seed, list, mappings, connection tests)
  - Running syncs and draining the retry queue by hand
  - Running the scheduler loop or the MCP server
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from erp_sync.core.config import DEFAULT_CONFIG_FILE, Config
from erp_sync.core.crypto import generate_key
from erp_sync.core.errors import ErpSyncError
from erp_sync.core.models import EntityType
from erp_sync.core.runtime import Runtime, configure_logging


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


@asynccontextmanager
async def _runtime(args: argparse.Namespace) -> AsyncIterator[Runtime]:
    config = Config.load(args.config)
    configure_logging(config.log_level)
    runtime = Runtime.from_config(config)
    try:
        yield runtime
    finally:
        await runtime.close()


def _overrides(entities: str | None) -> dict[str, bool] | None:
    """``assets,work_orders`` → enable exactly those entity types for this run."""
    if not entities:
        return None
    wanted = {name.strip() for name in entities.split(",") if name.strip()}
    unknown = wanted - {e.value for e in EntityType}
    if unknown:
        raise ErpSyncError(f"Unknown entity type(s): {', '.join(sorted(unknown))}")
    return {f"sync_{e.value}": e.value in wanted for e in EntityType}


async def _cmd_init(args: argparse.Namespace) -> None:
    """Generate a template config file."""
    template = Config.generate_template()
    if args.generate_key:
        template = template.replace("YOUR_FERNET_KEY", generate_key())
    dest = Path(args.output).expanduser()
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_text(template)
    print(f"Configuration template written to {dest}")
    print("Edit the file with your integration details, then run:")
    print(f"  erp-sync seed --config {dest}")


async def _cmd_types(args: argparse.Namespace) -> None:
    from erp_sync.connectors import ERP_TYPE_LABELS

    _print_json([{"value": t.value, **labels} for t, labels in ERP_TYPE_LABELS.items()])


async def _cmd_mappings(args: argparse.Namespace) -> None:
    from erp_sync.connectors import default_mappings_for

    _print_json(default_mappings_for(args.erp_type))


async def _cmd_seed(args: argparse.Namespace) -> None:
    """Create the integrations defined in the config file."""
    async with _runtime(args) as rt:
        config = Config.load(args.config)
        if not config.integrations:
            print("No integrations defined in config.")
            sys.exit(1)

        for name, seed in config.integrations.items():
            existing = await rt.service.list(seed.tenant_id)
            if any(item["name"] == name for item in existing):
                print(f"  [{name}] SKIP - already exists for tenant {seed.tenant_id}")
                continue
            created = await rt.service.create(**seed.to_create_kwargs())
            print(f"  [{name}] created {created['id']} ({seed.erp_type})")


async def _cmd_list(args: argparse.Namespace) -> None:
    async with _runtime(args) as rt:
        _print_json(await rt.service.list(args.tenant))


async def _cmd_test(args: argparse.Namespace) -> None:
    """Test one integration, or every integration of the tenant."""
    async with _runtime(args) as rt:
        if args.integration:
            ids = [args.integration]
        else:
            ids = [item["id"] for item in await rt.service.list(args.tenant)]
        if not ids:
            print("No integrations found.")
            sys.exit(1)

        print(f"Testing {len(ids)} integration(s)...\n")
        for integration_id in ids:
            view = await rt.service.get(integration_id, args.tenant)
            result = await rt.service.test_connection(integration_id, args.tenant)
            status = "OK" if result["success"] else f"FAIL - {result['message']}"
            print(f"  [{view['name']}] ({view['erp_type']}) {status}")


async def _cmd_sync(args: argparse.Namespace) -> None:
    async with _runtime(args) as rt:
        result = await rt.service.trigger_sync(
            args.integration, args.tenant, _overrides(args.entities), strict=args.strict
        )
        _print_json(result)
        if not result["success"]:
            sys.exit(2)


async def _cmd_rotate_keys(args: argparse.Namespace) -> None:
    """Re-encrypt stored connection configs under the first configured key."""
    async with _runtime(args) as rt:
        rotated = await rt.service.rotate_credentials(args.tenant)
        print(f"Re-encrypted {len(rotated)} integration(s).")
        if args.tenant is None:
            print("Stored configs no longer need the old key(s); remove them from encryption_key.")


async def _cmd_queue(args: argparse.Namespace) -> None:
    async with _runtime(args) as rt:
        if args.retry:
            _print_json(await rt.service.retry_queue_item(args.retry, args.tenant))
            return
        _print_json(await rt.service.list_queue_items(
            args.tenant,
            integration_id=args.integration,
            status=args.status,
            entity_type=args.entity_type,
        ))


async def _cmd_logs(args: argparse.Namespace) -> None:
    async with _runtime(args) as rt:
        _print_json(await rt.service.list_logs(
            args.integration,
            args.tenant,
            direction=args.direction,
            entity_type=args.entity_type,
            status=args.status,
            limit=args.limit,
        ))


async def _cmd_drain(args: argparse.Namespace) -> None:
    async with _runtime(args) as rt:
        report = await rt.scheduler.drain_queue_once()
        _print_json(report.to_dict())


async def _cmd_run(args: argparse.Namespace) -> None:
    """Run the scheduler until interrupted."""
    async with _runtime(args) as rt:
        rt.scheduler.start()
        print("Scheduler running. Press Ctrl+C to stop.", file=sys.stderr)
        try:
            await asyncio.Event().wait()
        finally:
            await rt.scheduler.stop()


async def _cmd_serve(args: argparse.Namespace) -> None:
    """Start the MCP server."""
    from erp_sync.mcp_server import serve

    config = Config.load(args.config)
    configure_logging(config.log_level)
    await serve(config, sse=args.sse, port=args.port)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="erp-sync",
        description="ERP Sync: keep maintenance records in step with SAP and Oracle",
    )
    sub = parser.add_subparsers(dest="command")

    def with_config(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
        p.add_argument("--config", type=str, default=None, help="Path to config file")
        return p

    # -- init --
    p_init = sub.add_parser("init", help="Generate a configuration template")
    p_init.add_argument(
        "-o", "--output",
        default=str(DEFAULT_CONFIG_FILE),
        help="Output path for the config file",
    )
    p_init.add_argument(
        "--generate-key", action="store_true", help="Fill in a fresh encryption key"
    )

    # -- types / mappings --
    sub.add_parser("types", help="List supported ERP types")
    p_map = sub.add_parser("mappings", help="Show an ERP type's default field mappings")
    p_map.add_argument("erp_type", choices=["sap", "oracle"])

    # -- integrations --
    with_config(sub.add_parser("seed", help="Create the integrations defined in the config"))

    p_list = with_config(sub.add_parser("list", help="List a tenant's integrations"))
    p_list.add_argument("-t", "--tenant", required=True)

    p_test = with_config(sub.add_parser("test", help="Test integration connections"))
    p_test.add_argument("-t", "--tenant", required=True)
    p_test.add_argument("-i", "--integration", default=None)

    p_sync = with_config(sub.add_parser("sync", help="Run a manual sync"))
    p_sync.add_argument("-t", "--tenant", required=True)
    p_sync.add_argument("-i", "--integration", required=True)
    p_sync.add_argument(
        "--entities", default=None,
        help="Comma-separated entity types to sync (assets,inventory,work_orders,purchase_orders)",
    )
    p_sync.add_argument(
        "--strict", action="store_true", help="Fail with an error if any record failed to sync"
    )

    p_rotate = with_config(sub.add_parser(
        "rotate-keys", help="Re-encrypt stored credentials under the first encryption key"
    ))
    p_rotate.add_argument("-t", "--tenant", default=None, help="Only this tenant's integrations")

    # -- queue / logs --
    p_queue = with_config(sub.add_parser("queue", help="List or retry sync queue items"))
    p_queue.add_argument("-t", "--tenant", required=True)
    p_queue.add_argument("-i", "--integration", default=None)
    p_queue.add_argument("--status", choices=["pending", "processing", "completed", "failed"])
    p_queue.add_argument("--entity-type", default=None)
    p_queue.add_argument("--retry", metavar="ITEM_ID", default=None, help="Process one pending item now")

    p_logs = with_config(sub.add_parser("logs", help="Show an integration's sync log"))
    p_logs.add_argument("-t", "--tenant", required=True)
    p_logs.add_argument("-i", "--integration", required=True)
    p_logs.add_argument("--direction", choices=["inbound", "outbound"])
    p_logs.add_argument("--entity-type", default=None)
    p_logs.add_argument("--status", choices=["success", "failed"])
    p_logs.add_argument("--limit", type=int, default=100)

    # -- workers --
    with_config(sub.add_parser("drain", help="Drain the retry queue once"))
    with_config(sub.add_parser("run", help="Run the scheduler until interrupted"))

    p_serve = with_config(sub.add_parser("serve", help="Start the MCP server"))
    p_serve.add_argument("--sse", action="store_true")
    p_serve.add_argument("--port", type=int, default=8080)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    dispatch = {
        "init": _cmd_init,
        "types": _cmd_types,
        "mappings": _cmd_mappings,
        "seed": _cmd_seed,
        "list": _cmd_list,
        "test": _cmd_test,
        "sync": _cmd_sync,
        "rotate-keys": _cmd_rotate_keys,
        "queue": _cmd_queue,
        "logs": _cmd_logs,
        "drain": _cmd_drain,
        "run": _cmd_run,
        "serve": _cmd_serve,
    }

    try:
        asyncio.run(dispatch[args.command](args))
    except KeyboardInterrupt:
        pass
    except ErpSyncError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
