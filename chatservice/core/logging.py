import logging


def configure_logging(log_level: str) -> None:
    """Configure process-wide logging for the chat service."""

    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # The OpenAI SDK logs full request bodies at DEBUG.
    logging.getLogger("openai").setLevel(max(level, logging.INFO))
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
