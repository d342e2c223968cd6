import dataclasses
import json
import logging
import os
import sys

from dotenv import load_dotenv

from handoff.config import get_settings


def get_log_config():
    log_level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    return {
        "log_dir": os.path.abspath(os.getenv("LOG_DIR", "logs")),
        "log_level": logging.getLevelName(log_level),
        "log_json": os.getenv("LOG_JSON", "false").lower() == "true",
        "retention_days": int(os.getenv("LOG_RETENTION_DAYS", "7")),
        "rotate_utc": os.getenv("LOG_ROTATE_UTC", "false").lower() == "true",
    }


def get_config():
    settings = dataclasses.asdict(get_settings())
    if settings.get("ws_token"):
        settings["ws_token"] = "***"
    return {"handoff": settings, "logging": get_log_config()}


def main():
    load_dotenv()
    sys.stdout.write(json.dumps(get_config(), indent=2) + "\n")


if __name__ == "__main__":
    main()
