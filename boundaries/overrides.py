"""
Load the per-boundary override table
"""

from pathlib import Path

import yaml
from pydantic import ValidationError

from schemas.boundary import OverrideTable
from core.exceptions import OverrideConfigError
import logging

logger = logging.getLogger(__name__)


def load_overrides(path: str) -> OverrideTable:
    """
    Read and validate the YAML override file once at startup.

    A missing file means no overrides; a malformed one is fatal.
    """
    override_path = Path(path)
    if not override_path.is_file():
        logger.warning(f"Override file {override_path} not found, running without overrides")
        return OverrideTable()

    try:
        with open(override_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        table = OverrideTable(**data)
    except yaml.YAMLError as e:
        raise OverrideConfigError(
            "Override file is not valid YAML",
            context={"path": str(override_path)},
            original_exception=e
        )
    except (ValidationError, TypeError) as e:
        raise OverrideConfigError(
            "Override file does not match the expected structure",
            context={"path": str(override_path)},
            original_exception=e
        )

    logger.info(
        f"Loaded {len(table.boundaries)} boundary overrides and "
        f"{len(table.extra_country_ids)} extra country ids from {override_path}"
    )
    return table
