"""Run the loyalty core API locally with ``python -m vcarda_api``."""

import uvicorn

from vcarda_api.core.settings import settings


def main() -> None:
    uvicorn.run(
        "vcarda_api.app:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development",
        log_config=None,
    )


if __name__ == "__main__":
    main()
