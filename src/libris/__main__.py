# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH. All rights reserved.
# Non-commercial use only. Commercial licensing: info@4rce.com

"""
Unified entry point: python -m libris

Runs Web API + MCP Server in a single process with shared state.
Web API in a background thread, MCP SSE server in the main thread.
"""
import threading

import uvicorn

from .config import Config
from .engine import RagEngine
from .server import create_mcp_server
from .web import create_web_app


def _run_mcp_sse(mcp_server, host: str, port: int):
    """Run MCP server via SSE, compatible with both old and new mcp SDK versions."""
    # Try sse_app() first (mcp >= 1.20), fall back to run() for older versions
    try:
        sse_app = mcp_server.sse_app()
        uvicorn.run(sse_app, host=host, port=port, log_level="warning")
    except AttributeError:
        mcp_server.settings.host = host
        mcp_server.settings.port = port
        mcp_server.run(transport="sse")


def main():
    config = Config.load()

    print(f"Opening knowledge base {config.db_path} ...")
    engine = RagEngine(config)
    stats = engine.store.stats
    print(f"Ready: {stats['total_chunks']} chunks from {stats['sources']} sources")

    web_app = create_web_app(engine)
    mcp_server = create_mcp_server(engine)

    def run_web():
        uvicorn.run(
            web_app, host="0.0.0.0", port=config.web_port,
            log_level="warning",
        )

    web_thread = threading.Thread(target=run_web, daemon=True)
    web_thread.start()
    print(f"Web API running on http://0.0.0.0:{config.web_port}")

    print(f"MCP server starting ({config.transport} transport)...")
    try:
        if config.transport == "sse":
            _run_mcp_sse(mcp_server, "0.0.0.0", config.sse_port)
        else:
            mcp_server.run(transport="stdio")
    finally:
        engine.close()


if __name__ == "__main__":
    main()
