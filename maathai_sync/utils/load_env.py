"""Load environment variables from a .env file for local development."""

import logging
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env(env_file: Optional[Union[str, Path]] = None) -> bool:
    """Load environment variables from ``env_file`` (default: ./.env) if it exists."""
    path = Path(env_file) if env_file else Path.cwd() / '.env'

    if not path.exists():
        logger.debug("No .env file found at %s", path)
        return False

    load_dotenv(path)
    logger.info("Environment variables loaded from %s", path)
    return True
