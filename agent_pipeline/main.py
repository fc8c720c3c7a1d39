"""Entry point for running the Agent Pipeline Engine with uvicorn."""

import argparse

import uvicorn

from .config import load_config
from .core.exceptions import ConfigurationError
from .factory import create_app


def main():
    parser = argparse.ArgumentParser(description="Agent Pipeline Engine")
    parser.add_argument("--env-file", help="Path to a .env file with AGENT_PIPELINE_* settings")
    parser.add_argument("--host", help="Override the configured host")
    parser.add_argument("--port", type=int, help="Override the configured port")
    args = parser.parse_args()

    try:
        config = load_config(args.env_file)
    except ConfigurationError as e:
        parser.error(e.message)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port

    server_config = config.get_uvicorn_config()
    server_config.pop("reload")
    uvicorn.run(create_app(config), **server_config)


if __name__ == "__main__":
    main()
