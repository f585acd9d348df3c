from __future__ import annotations

import uvicorn

from viac_config import setup_logging
from viac_web.app import create_app, load_config


def main() -> None:
    cfg = load_config()
    setup_logging(cfg.get("server", {}).get("log_level", "INFO").upper())
    host = cfg.get("server", {}).get("host", "127.0.0.1")
    port = int(cfg.get("server", {}).get("port", 8000))
    uvicorn.run(create_app(cfg), host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
