"""
Entry point: ``python -m podhealer`` or the ``podhealer`` console script.
"""

import sys

from pydantic import ValidationError


def run() -> None:
    from podhealer.config import get_settings

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid Pod Healer configuration:\n{e}", file=sys.stderr)
        sys.exit(2)

    import uvicorn

    uvicorn.run(
        "podhealer.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=None,
    )


if __name__ == "__main__":
    run()
