"""
Main entry point for the federated chat server.

Can be called with: python -m federated_chat
"""

import argparse
import logging

import uvicorn

from .app import create_app
from .settings import Settings


def main():
    """Main entry point for the federated chat server."""
    parser = argparse.ArgumentParser(
        description="Federated Chat - streaming chat over federated MCP tools"
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Interface to bind (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to run the server on (default: 8000)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the MCP server configuration (overrides FEDCHAT_MCP_CONFIG)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = Settings.from_env()
    if args.config:
        settings.mcp_config_path = args.config

    logging.getLogger(__name__).info(
        f"Starting chat server on http://{args.host}:{args.port} "
        f"(provider={settings.provider}, model={settings.model})"
    )
    uvicorn.run(create_app(settings), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
