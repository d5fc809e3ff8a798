"""
Run ID generation utilities.
"""

import random
import re
import string
from datetime import datetime

RUN_ID_PATTERN = re.compile(r"^r-\d{8}-\d{6}-[a-z0-9]{4}$")


def new_run_id() -> str:
    """
    Generate a new run ID in format: r-YYYYMMDD-hhmmss-xxxx

    Returns:
        str: Unique run ID
    """
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=4))
    return f"r-{stamp}-{suffix}"


def is_valid_run_id(run_id: str) -> bool:
    """Run IDs double as directory names, so anything else is rejected."""
    return bool(RUN_ID_PATTERN.match(run_id or ""))
