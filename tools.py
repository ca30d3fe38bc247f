"""MCP tools for vin-mcp-server.

Defines the tools exposed to MCP clients. Report production is delegated to
the injected ``ReportService``; sessions share one server definition and get
their own protocol session when the broker runs it on a fresh transport.
"""

import json
import logging

from fastmcp import FastMCP

from reports import ReportService, ReportUnavailable, normalize_vin

logger = logging.getLogger(__name__)

SERVER_NAME = "vin-mcp"

VIN_LENGTH = 17


async def decode_vin_report(report_service: ReportService, vin: str) -> str:
    """Produce the decode_vin tool result for ``vin`` as JSON text."""
    vin = normalize_vin(vin)
    logger.info(f"[TOOL] decode_vin invoked for {vin}")
    if len(vin) != VIN_LENGTH:
        return json.dumps({"valid": False, "vin": vin, "error": f"VIN must be {VIN_LENGTH} characters"})

    try:
        report = await report_service.report(vin)
    except ReportUnavailable as e:
        return json.dumps({"valid": True, "vin": vin, "error": str(e)})
    return json.dumps(report, indent=2)


def create_mcp_server(report_service: ReportService) -> FastMCP:
    """Build the FastMCP server with the VIN tools bound to ``report_service``."""
    mcp = FastMCP(SERVER_NAME)

    @mcp.tool()
    async def decode_vin(vin: str) -> str:
        """Decode a VIN and return a vehicle report.

        Args:
            vin: 17-character Vehicle Identification Number

        Returns:
            The report as pretty-printed JSON
        """
        return await decode_vin_report(report_service, vin)

    return mcp
