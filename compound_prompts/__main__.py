import argparse

from aiohttp import web

from .api_routes import create_app
from .config import configure_logging, load_config


def main() -> None:
    parser = argparse.ArgumentParser(description="Serve the compound prompts API")
    parser.add_argument("--config", help="Path to the config file")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8188)
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(config)
    web.run_app(create_app(config), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
