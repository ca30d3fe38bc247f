"""CLI entry point for vin-mcp-server.

Runs the HTTP server (OAuth + Streamable HTTP MCP), a stdio MCP server for
local clients, or queries a running server's status.
"""
import argparse
import sys
from pathlib import Path

import httpx
import uvicorn
from dotenv import load_dotenv

from config import CONFIG_FILE, load_config
from logging_config import setup_logging

# Load environment: .env (local override) if present
_env_file = Path(".env")
if _env_file.exists():
    load_dotenv(_env_file)


# ============== Commands ==============

def cmd_serve(host: str = None, port: int = None):
    """Run the HTTP server in the foreground."""
    config = load_config()
    setup_logging(config.log_level, config.log_format)
    host = host or config.host
    port = port or config.port

    print("\n" + "=" * 60)
    print("  VIN MCP Server")
    print("=" * 60)
    print(f"  Listening:  http://{host}:{port}")
    print(f"  Public URL: {config.base_url}")
    print()
    print("  Endpoints:")
    print(f"    /mcp      {config.base_url}/mcp")
    print(f"    /health   {config.base_url}/health")
    print("=" * 60 + "\n")

    uvicorn.run("main:build_default_app", factory=True, host=host, port=port, log_level="info")


def cmd_stdio():
    """Run the MCP tools over stdio (no OAuth, no session broker)."""
    from reports import NhtsaReportProducer, ReportCache, ReportService
    from tools import create_mcp_server

    config = load_config()
    # stdout carries the protocol, so logs go to stderr only
    setup_logging(config.log_level, config.log_format)
    service = ReportService(
        NhtsaReportProducer(config.nhtsa_base_url),
        ReportCache(config.report_cache_size, config.report_cache_ttl),
    )
    create_mcp_server(service).run()


def cmd_status(url: str = None):
    """Show the status of a running server."""
    config = load_config()
    url = (url or config.base_url).rstrip("/")

    print("\n" + "=" * 50)
    print("  VIN MCP Server Status")
    print("=" * 50)

    print("\n[Server]")
    print(f"  URL:      {url}")
    try:
        health = httpx.get(f"{url}/health", timeout=5)
        print(f"  Status:   {'Running' if health.status_code == 200 else f'HTTP {health.status_code}'}")
    except httpx.HTTPError as e:
        print(f"  Status:   Unreachable ({e.__class__.__name__})")
        print("\n" + "=" * 50 + "\n")
        sys.exit(1)

    print("\n[Sessions / OAuth]")
    if not config.admin_key:
        print("  Set ADMIN_KEY to see live counters")
    else:
        response = httpx.get(f"{url}/api/admin/status", headers={"X-Admin-Key": config.admin_key}, timeout=5)
        if response.status_code == 200:
            for key, value in response.json().items():
                print(f"  {key + ':':<24}{value}")
        else:
            print(f"  Admin API refused the request (HTTP {response.status_code})")

    print("\n[Config]")
    print(f"  File:     {CONFIG_FILE}")
    print(f"  Exists:   {CONFIG_FILE.exists()}")

    print("\n" + "=" * 50 + "\n")


def cmd_version():
    """Show version information."""
    from main import VERSION

    print(f"vin-mcp-server v{VERSION}")


def main(argv: list[str] = None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="vin-mcp",
        description="VIN MCP Server - VIN reports over MCP with OAuth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  serve     Run the HTTP server (default)
  stdio     Run the MCP tools over stdio
  status    Show the status of a running server
  version   Show version

Examples:
  vin-mcp serve --port 3200
  vin-mcp status --url http://localhost:3200
"""
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "stdio", "status", "version"],
        help="Command to run (default: serve)"
    )
    parser.add_argument("--host", help="Bind address (default: MCP_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Bind port (default: MCP_PORT or 3200)")
    parser.add_argument("--url", help="Server URL for 'status' (default: BASE_URL)")
    parser.add_argument("--version", "-v", action="store_true", help=argparse.SUPPRESS)

    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        cmd_version()
    elif args.command == "serve":
        cmd_serve(args.host, args.port)
    elif args.command == "stdio":
        cmd_stdio()
    elif args.command == "status":
        cmd_status(args.url)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
