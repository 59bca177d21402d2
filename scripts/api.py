from __future__ import annotations

import uvicorn

from maintdesk.apps.api.main import create_app
from maintdesk.core.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
