from logging.config import dictConfig

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
JSON_FORMAT = '{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","message":"%(message)s"}'


def setup_logging(level: str = "INFO", json_logs: bool = False):
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": LOG_FORMAT,
                },
                "json": {  # structured logs for prod
                    "format": JSON_FORMAT,
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "json" if json_logs else "default",
                },
            },
            "loggers": {
                # realtime logs every heartbeat at INFO
                "realtime": {"level": "WARNING"},
                "httpx": {"level": "WARNING"},
            },
            "root": {
                "level": (level or "INFO").upper(),
                "handlers": ["console"],
            },
        }
    )
