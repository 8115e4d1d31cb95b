"""Utility functions for the chat relay."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from logger import LOGGER_NAME, mask_secret

log = logging.getLogger(LOGGER_NAME)


def load_env_files() -> None:
    """Apply .env files: the one next to the service first, then the working directory's."""
    candidates = []
    for p in (Path(__file__).resolve().parent / ".env", Path.cwd() / ".env"):
        if p not in candidates:
            candidates.append(p)

    applied = []
    for p in candidates:
        if not p.is_file():
            log.debug("No .env at %s", p)
            continue
        if load_dotenv(dotenv_path=p, override=True):
            applied.append(str(p))

    if applied:
        log.info("Loaded .env from %s", ", ".join(applied))
    else:
        log.info(".env not loaded (not found or no variables applied)")


def dump_config(config) -> None:
    """Log effective configuration at startup."""
    log.info("=== Chat relay startup config ===")
    log.info("OPENAI_API_HOST=%s", config.openai_api_host)
    log.info("OPENAI_API_TYPE=%s", config.openai_api_type)
    if config.openai_api_type == "azure":
        log.info("AZURE_DEPLOYMENT_ID=%s", config.azure_deployment_id)
        log.info("OPENAI_API_VERSION=%s", config.openai_api_version)
    else:
        log.info("OPENAI_ORGANIZATION=%s", config.openai_organization or "<unset>")
    log.info(
        "OPENAI_API_KEY_set=%s value=%s",
        bool(config.openai_api_key),
        mask_secret(config.openai_api_key),
    )
    log.info("DEFAULT_MODEL=%s", config.default_model)
    log.info("DEFAULT_TEMPERATURE=%s", config.default_temperature)
    log.info("MAX_TOKENS=%s", config.max_tokens)
    log.info("DIFY_API_URL=%s", config.dify_api_url)
    log.info(
        "DIFY_API_KEY_set=%s value=%s",
        bool(config.dify_api_key),
        mask_secret(config.dify_api_key),
    )
    log.info("DIFY_API_TIMEOUT=%sms", config.dify_api_timeout_ms)
    log.info("REQUEST_TIMEOUT_S=%s", config.request_timeout_s)
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path)
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("=================================")
