"""Run the sync server: ``python -m api.server`` (or the ``mix-sync`` script).

Configuration comes from ``MIX_*`` environment variables; see ``core.config``.
"""

from __future__ import annotations

import uvicorn

from api.main import create_app
from core.config import load_config
from infrastructure.log_config import configure_logging


def main() -> None:
    config = load_config()
    configure_logging(config.log_level_number)
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_config=None)


if __name__ == "__main__":
    main()
