"""
MCP (Model Context Protocol) server for ERP Sync.

Exposes the integration management surface (integration CRUD, field
mappings, connection tests, manual syncs, retry queue, sync log) as
tools, so an MCP client can operate ERP integrations conversationally.

Launch:
    python -m erp_sync.mcp_server                 # stdio transport
    python -m erp_sync.mcp_server --sse           # SSE transport (HTTP)
    python -m erp_sync.mcp_server --scheduler     # also run the sync scheduler
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from erp_sync.core.config import Config
from erp_sync.core.runtime import Runtime, configure_logging

logger = logging.getLogger("erp_sync.mcp")

# ── Global state ─────────────────────────────────────────────────────────

_config: Config | None = None
_runtime: Runtime | None = None


def _to_content(data: Any = None, success: bool = True, message: str = "") -> list[TextContent]:
    payload = {"success": success, "message": message, "data": data}
    return [TextContent(type="text", text=json.dumps(payload, indent=2, default=str))]


def _get_runtime() -> Runtime:
    """Lazily build the runtime from the loaded configuration."""
    global _config, _runtime
    if _runtime is None:
        if _config is None:
            _config = Config.load()
        _runtime = Runtime.from_config(_config)
    return _runtime


_TENANT = {"type": "string", "description": "Tenant that owns the integration."}
_INTEGRATION = {"type": "string", "description": "Integration config ID."}
_ENTITY_TYPE = {
    "type": "string",
    "enum": ["assets", "inventory", "work_orders", "purchase_orders"],
}
_MAPPINGS = {
    "type": "object",
    "description": "Field mappings: {entity_type: {erp_field: internal_field}}.",
}


# ── MCP Server definition ───────────────────────────────────────────────

app = Server("erp-sync")


# ---------- Tool definitions ----------


@app.list_tools()
async def list_tools() -> list[Tool]:
    return [
        # -- catalogue ----------------------------------------------------
        Tool(
            name="erp_list_types",
            description="List the supported ERP types with human-readable labels.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="erp_default_mappings",
            description="Get the default field-mapping table for an ERP type.",
            inputSchema={
                "type": "object",
                "properties": {"erp_type": {"type": "string", "enum": ["sap", "oracle"]}},
                "required": ["erp_type"],
            },
        ),
        # -- integrations -------------------------------------------------
        Tool(
            name="erp_create_integration",
            description=(
                "Create an ERP integration for a tenant. connection_config holds "
                "base_url and credentials (username/password, api_key, or an "
                "oauth block with token_url/client_id/client_secret); it is "
                "stored encrypted and never returned."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "tenant_id": _TENANT,
                    "erp_type": {"type": "string", "enum": ["sap", "oracle"]},
                    "name": {"type": "string"},
                    "description": {"type": "string"},
                    "connection_config": {"type": "object"},
                    "mappings": _MAPPINGS,
                    "sync_settings": {
                        "type": "object",
                        "description": (
                            "sync_assets, sync_inventory, sync_work_orders, "
                            "sync_purchase_orders (bool), sync_interval (minutes), auto_sync (bool)."
                        ),
                    },
                    "is_active": {"type": "boolean"},
                },
                "required": ["tenant_id", "erp_type", "name", "connection_config"],
            },
        ),
        Tool(
            name="erp_list_integrations",
            description="List a tenant's ERP integrations.",
            inputSchema={
                "type": "object",
                "properties": {"tenant_id": _TENANT},
                "required": ["tenant_id"],
            },
        ),
        Tool(
            name="erp_get_integration",
            description="Get one integration, including its sync status and last sync stats.",
            inputSchema={
                "type": "object",
                "properties": {"tenant_id": _TENANT, "integration_id": _INTEGRATION},
                "required": ["tenant_id", "integration_id"],
            },
        ),
        Tool(
            name="erp_update_integration",
            description=(
                "Update an integration. 'changes' may set name, description, "
                "connection_config, mappings, sync_settings (merged), is_active."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "tenant_id": _TENANT,
                    "integration_id": _INTEGRATION,
                    "changes": {"type": "object"},
                },
                "required": ["tenant_id", "integration_id", "changes"],
            },
        ),
        Tool(
            name="erp_delete_integration",
            description="Delete an integration together with its log and queue items.",
            inputSchema={
                "type": "object",
                "properties": {"tenant_id": _TENANT, "integration_id": _INTEGRATION},
                "required": ["tenant_id", "integration_id"],
            },
        ),
        Tool(
            name="erp_update_mappings",
            description="Overlay field mappings onto an integration, per entity type.",
            inputSchema={
                "type": "object",
                "properties": {
                    "tenant_id": _TENANT,
                    "integration_id": _INTEGRATION,
                    "mappings": _MAPPINGS,
                },
                "required": ["tenant_id", "integration_id", "mappings"],
            },
        ),
        # -- connection & sync --------------------------------------------
        Tool(
            name="erp_test_connection",
            description="Connect to the ERP and report success with a precise reason on failure.",
            inputSchema={
                "type": "object",
                "properties": {"tenant_id": _TENANT, "integration_id": _INTEGRATION},
                "required": ["tenant_id", "integration_id"],
            },
        ),
        Tool(
            name="erp_trigger_sync",
            description=(
                "Run a manual sync. 'overrides' may switch sync_assets, "
                "sync_inventory, sync_work_orders, sync_purchase_orders for this run."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "tenant_id": _TENANT,
                    "integration_id": _INTEGRATION,
                    "overrides": {"type": "object"},
                },
                "required": ["tenant_id", "integration_id"],
            },
        ),
        # -- queue --------------------------------------------------------
        Tool(
            name="erp_list_queue",
            description="List retry-queue items for a tenant.",
            inputSchema={
                "type": "object",
                "properties": {
                    "tenant_id": _TENANT,
                    "integration_id": _INTEGRATION,
                    "status": {"type": "string", "enum": ["pending", "processing", "completed", "failed"]},
                    "entity_type": _ENTITY_TYPE,
                },
                "required": ["tenant_id"],
            },
        ),
        Tool(
            name="erp_enqueue",
            description="Queue a sync operation for deferred processing.",
            inputSchema={
                "type": "object",
                "properties": {
                    "tenant_id": _TENANT,
                    "integration_id": _INTEGRATION,
                    "operation": {"type": "string", "enum": ["create", "update", "delete"]},
                    "entity_type": _ENTITY_TYPE,
                    "entity_id": {"type": "string"},
                    "payload": {"type": "object"},
                    "priority": {"type": "integer", "default": 5},
                },
                "required": ["tenant_id", "integration_id", "operation", "entity_type", "entity_id"],
            },
        ),
        Tool(
            name="erp_retry_queue_item",
            description="Process one pending queue item now.",
            inputSchema={
                "type": "object",
                "properties": {"tenant_id": _TENANT, "item_id": {"type": "string"}},
                "required": ["tenant_id", "item_id"],
            },
        ),
        Tool(
            name="erp_drain_queue",
            description="Run one retry-queue drain cycle across all tenants.",
            inputSchema={"type": "object", "properties": {}},
        ),
        # -- logs ---------------------------------------------------------
        Tool(
            name="erp_list_logs",
            description="List sync log entries for an integration, newest first.",
            inputSchema={
                "type": "object",
                "properties": {
                    "tenant_id": _TENANT,
                    "integration_id": _INTEGRATION,
                    "direction": {"type": "string", "enum": ["inbound", "outbound"]},
                    "entity_type": {"type": "string"},
                    "status": {"type": "string", "enum": ["success", "failed"]},
                    "limit": {"type": "integer", "default": 100},
                },
                "required": ["tenant_id", "integration_id"],
            },
        ),
        # -- utility ------------------------------------------------------
        Tool(
            name="erp_generate_config",
            description="Generate a template configuration file for ERP Sync.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


# ---------- Tool handlers ----------


@app.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    arguments = arguments or {}
    try:
        if name == "erp_generate_config":
            return _to_content(Config.generate_template(), message="Configuration template")

        rt = _get_runtime()
        service = rt.service
        tenant = arguments.get("tenant_id", "")

        if name == "erp_list_types":
            return _to_content(service.list_erp_types())

        if name == "erp_default_mappings":
            return _to_content(service.default_mappings(arguments["erp_type"]))

        # -- integrations -------------------------------------------------
        if name == "erp_create_integration":
            created = await service.create(
                tenant_id=tenant,
                erp_type=arguments["erp_type"],
                name=arguments["name"],
                connection_config=arguments["connection_config"],
                description=arguments.get("description", ""),
                mappings=arguments.get("mappings"),
                sync_settings=arguments.get("sync_settings"),
                is_active=arguments.get("is_active", True),
            )
            return _to_content(created, message=f"Created integration {created['id']}")

        if name == "erp_list_integrations":
            return _to_content(await service.list(tenant))

        if name == "erp_get_integration":
            return _to_content(await service.get(arguments["integration_id"], tenant))

        if name == "erp_update_integration":
            return _to_content(await service.update(
                arguments["integration_id"], tenant, arguments["changes"]
            ))

        if name == "erp_delete_integration":
            await service.delete(arguments["integration_id"], tenant)
            return _to_content(message=f"Deleted integration {arguments['integration_id']}")

        if name == "erp_update_mappings":
            return _to_content(await service.update_mappings(
                arguments["integration_id"], tenant, arguments["mappings"]
            ))

        # -- connection & sync --------------------------------------------
        if name == "erp_test_connection":
            result = await service.test_connection(arguments["integration_id"], tenant)
            return _to_content(result, success=result["success"], message=result["message"])

        if name == "erp_trigger_sync":
            result = await service.trigger_sync(
                arguments["integration_id"], tenant, arguments.get("overrides")
            )
            return _to_content(result["stats"], success=result["success"])

        # -- queue --------------------------------------------------------
        if name == "erp_list_queue":
            return _to_content(await service.list_queue_items(
                tenant,
                integration_id=arguments.get("integration_id"),
                status=arguments.get("status"),
                entity_type=arguments.get("entity_type"),
            ))

        if name == "erp_enqueue":
            return _to_content(await service.enqueue(
                arguments["integration_id"],
                tenant,
                arguments["operation"],
                arguments["entity_type"],
                arguments["entity_id"],
                arguments.get("payload"),
                priority=arguments.get("priority", 5),
            ))

        if name == "erp_retry_queue_item":
            item = await service.retry_queue_item(arguments["item_id"], tenant)
            return _to_content(item, success="error" not in item, message=item.get("error", ""))

        if name == "erp_drain_queue":
            report = await rt.scheduler.drain_queue_once()
            return _to_content(report.to_dict())

        # -- logs ---------------------------------------------------------
        if name == "erp_list_logs":
            return _to_content(await service.list_logs(
                arguments["integration_id"],
                tenant,
                direction=arguments.get("direction"),
                entity_type=arguments.get("entity_type"),
                status=arguments.get("status"),
                limit=arguments.get("limit", 100),
            ))

        return _to_content(success=False, message=f"Unknown tool: {name}")

    except Exception as exc:
        logger.exception("Tool %s failed", name)
        return _to_content(success=False, message=f"Error: {exc}")


# ── Entry point ──────────────────────────────────────────────────────────


async def run_stdio() -> None:
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


async def run_sse(port: int) -> None:
    from mcp.server.sse import SseServerTransport
    from starlette.applications import Starlette
    from starlette.routing import Mount, Route
    import uvicorn

    sse = SseServerTransport("/messages/")

    async def handle_sse(request):
        async with sse.connect_sse(
            request.scope, request.receive, request._send
        ) as streams:
            await app.run(streams[0], streams[1], app.create_initialization_options())

    starlette_app = Starlette(
        routes=[
            Route("/sse", endpoint=handle_sse),
            Mount("/messages/", app=sse.handle_post_message),
        ]
    )
    server = uvicorn.Server(uvicorn.Config(starlette_app, host="0.0.0.0", port=port))
    await server.serve()


async def serve(
    config: Config | None = None,
    sse: bool = False,
    port: int = 8080,
    scheduler: bool = False,
) -> None:
    global _config
    if config is not None:
        _config = config
    rt = _get_runtime()
    if scheduler:
        rt.scheduler.start()
    try:
        if sse:
            await run_sse(port)
        else:
            await run_stdio()
    finally:
        await rt.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="ERP Sync MCP Server")
    parser.add_argument("--config", type=str, default=None, help="Path to config file")
    parser.add_argument("--sse", action="store_true", help="Run in SSE mode instead of stdio")
    parser.add_argument("--port", type=int, default=8080, help="SSE port")
    parser.add_argument(
        "--scheduler", action="store_true", help="Also run the queue drain and sync sweep"
    )
    args = parser.parse_args()

    config = Config.load(args.config)
    configure_logging(config.log_level)
    asyncio.run(serve(config, sse=args.sse, port=args.port, scheduler=args.scheduler))


if __name__ == "__main__":
    main()
