import os

import uvicorn

from automations_backend.config import settings
from automations_backend.logging_config import configure_logging


def main() -> None:
    """
    Serve the scheduler trigger and tenant automation API.
    - HOST / PORT from env; defaults to 0.0.0.0:5000.
    - Uvicorn reuses the handlers set up by configure_logging().
    """
    configure_logging()

    uvicorn.run(
        "automations_backend.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", 5000)),
        reload=settings.debug,
        log_config=None,
        log_level=settings.log_level.lower(),
        use_colors=False,
    )


if __name__ == "__main__":
    main()
