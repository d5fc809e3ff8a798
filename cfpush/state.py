"""
On-disk state for orchestration runs.

Each run owns a directory under ``CFPUSH_HOME`` holding its event log
(``events.ndjson``) and its final result (``result.json``).
"""

import json
import os
from pathlib import Path
from typing import Dict, Any, Optional

from .ids import is_valid_run_id


def get_cfpush_home() -> Path:
    """
    Get the cfpush home directory.
    
    Returns:
        Path: cfpush home directory
    """
    home = os.environ.get("CFPUSH_HOME", ".cfpush")
    return Path(home).resolve()


def get_run_dir(run_id: str) -> Path:
    """
    Get the directory for a specific run.
    
    Args:
        run_id: Run ID
        
    Returns:
        Path: Run directory
        
    Raises:
        ValueError: If run ID is invalid
    """
    if not is_valid_run_id(run_id):
        raise ValueError(f"Invalid run ID: {run_id}")
    
    return get_cfpush_home() / run_id


def create_run_dir(run_id: str) -> Path:
    """Create the run directory and return its path."""
    run_dir = get_run_dir(run_id)
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def write_result_json(run_id: str, result: Dict[str, Any]) -> None:
    """
    Write the final run result to result.json.
    
    Args:
        run_id: Run ID
        result: Serializable run result
    """
    run_dir = get_run_dir(run_id)
    
    with open(run_dir / "result.json", "w") as f:
        json.dump(result, f, indent=2)


def read_result_json(run_id: str) -> Optional[Dict[str, Any]]:
    """
    Read the final run result from result.json.
    
    Args:
        run_id: Run ID
        
    Returns:
        Dict: Run result or None if the run has not finished
    """
    result_file = get_run_dir(run_id) / "result.json"
    
    if not result_file.exists():
        return None
    
    with open(result_file, "r") as f:
        return json.load(f)


def list_runs() -> list[str]:
    """
    List all run IDs, most recent first.
    
    Returns:
        List of run IDs
    """
    home = get_cfpush_home()
    
    if not home.exists():
        return []
    
    runs = []
    for item in home.iterdir():
        if item.is_dir() and is_valid_run_id(item.name):
            runs.append(item.name)
    
    return sorted(runs, reverse=True)


def run_exists(run_id: str) -> bool:
    """Check if a run directory with an event log exists."""
    run_dir = get_run_dir(run_id)
    return run_dir.exists() and (run_dir / "events.ndjson").exists()
