import logging
from typing import Optional


def configure_logging(level: str = "INFO", agent_id: Optional[str] = None) -> None:
    """
    Configure logging for the lanwatch edge agent.

    With `agent_id`, every line is tagged with it so logs collected from
    several agents can be told apart.
    """

    # Convert "INFO" -> logging.INFO etc.
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    tag = f"[{agent_id.replace('%', '%%')}] " if agent_id else ""

    # Configure root logger.
    logging.basicConfig(
        level=numeric_level,
        format=f"%(asctime)s - %(name)s - %(levelname)s - {tag}%(message)s",
    )

    # httpx logs every request at INFO; one line per probe write is too noisy.
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))
