from __future__ import annotations

import argparse
import logging
import os

from termide.config import (
    log_level,
    projects_dir,
    server_host,
    server_port,
    uploads_dir,
)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="termide", description="Serve the termide backend.")
    parser.add_argument("--host", default=None, help="bind address (TERMIDE_HOST)")
    parser.add_argument("--port", type=int, default=None, help="bind port (TERMIDE_PORT)")
    parser.add_argument("--log-level", default=None, help="logging level (TERMIDE_LOG_LEVEL)")
    args = parser.parse_args(argv)

    level = (args.log_level or log_level()).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log = logging.getLogger("termide")

    os.makedirs(projects_dir(), exist_ok=True)
    os.makedirs(uploads_dir(), exist_ok=True)

    import uvicorn

    host = args.host or server_host()
    port = args.port or server_port()
    log.info("termide listening on http://%s:%s", host, port)
    log.info("projects folder: %s", projects_dir())
    uvicorn.run("termide.runtimes.ws_server:app", host=host, port=port, log_level=level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
