import uvicorn

from code_sandbox.logs import setup_logging
from code_sandbox.settings import get_settings


def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    uvicorn.run(
        "code_sandbox.api:app",
        host="0.0.0.0",
        port=settings.port,
        reload=False,
        log_config=None,
    )


if __name__ == "__main__":
    main()
