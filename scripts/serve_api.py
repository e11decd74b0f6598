from __future__ import annotations

import uvicorn

from approvalgate.apps.api.main import create_app
from approvalgate.core.config import get_settings


def main() -> None:
    # Serve the gate API with env-driven host and port.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
