"""
Configuration loader for the client-side session settings.

Handles loading and validating session configuration files.
"""

import json
import sys
from pathlib import Path
from typing import Optional

from .models import SessionConfig


def load_config(config_path: Optional[Path] = None) -> SessionConfig:
    """
    Load session configuration from a JSON file.

    Args:
        config_path: Path to the configuration file. If None, looks for
                    'session_config.json' next to the executable/script.

    Returns:
        SessionConfig object with validated configuration

    Raises:
        ValueError: If config is invalid
    """
    if config_path is None:
        if getattr(sys, 'frozen', False):
            base_dir = Path(sys.executable).parent
        else:
            base_dir = Path(__file__).parent.parent

        config_path = base_dir / "session_config.json"

    config_path = Path(config_path)
    if not config_path.exists():
        print(f"Warning: Config file '{config_path}' not found. Using default configuration.")
        return SessionConfig.default()

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}")
    except OSError as e:
        raise ValueError(f"Error reading config file: {e}")

    if not isinstance(data, dict):
        raise ValueError("Invalid configuration: top level must be an object")

    try:
        config = SessionConfig.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid configuration: {e}")

    is_valid, error_message = config.validate()
    if not is_valid:
        raise ValueError(f"Invalid configuration: {error_message}")

    return config


def create_sample_config(output_path: Path):
    """
    Create a sample configuration file with every setting at its default.

    Args:
        output_path: Path where to save the sample config
    """
    defaults = SessionConfig.default()
    sample_config = {
        "tick_interval_seconds": defaults.tick_interval_seconds,
        "timer_persist_interval_seconds": defaults.timer_persist_interval_seconds,
        "low_time_warning_seconds": defaults.low_time_warning_seconds,
        "violation_warning_seconds": defaults.violation_warning_seconds,
        "default_max_violations": defaults.default_max_violations,
        "probe_interval_seconds": defaults.probe_interval_seconds,
        "probe_timeout_seconds": defaults.probe_timeout_seconds,
        "probe_disagreements_required": defaults.probe_disagreements_required,
        "retry_base_delay_seconds": defaults.retry_base_delay_seconds,
        "retry_max_delay_seconds": defaults.retry_max_delay_seconds,
        "max_submission_retries": defaults.max_submission_retries,
        "resume_poll_interval_seconds": defaults.resume_poll_interval_seconds,
        "storage_dir": defaults.storage_dir,
        "log_file": defaults.log_file,
        "_comment": "Client-side session settings. Adjust values as needed.",
        "_instructions": {
            "tick_interval_seconds": "Timer tick resolution (at most 1 second)",
            "timer_persist_interval_seconds": "How often the remaining time is saved locally",
            "low_time_warning_seconds": "Remaining time that triggers the low-time warning",
            "violation_warning_seconds": "Countdown of the 'return to exam' prompt",
            "default_max_violations": "Violation threshold when the exam does not set one",
            "probe_interval_seconds": "Interval between reachability probes",
            "probe_timeout_seconds": "Timeout of a single reachability probe",
            "probe_disagreements_required": "Consecutive disagreeing probes before the health state flips (1 or 2)",
            "retry_base_delay_seconds": "First submission retry delay",
            "retry_max_delay_seconds": "Cap of the submission retry delay",
            "max_submission_retries": "Automatic retries before a manual retry is needed",
            "resume_poll_interval_seconds": "How often a pending resume request is polled",
            "storage_dir": "Directory of the durable local state",
            "log_file": "Session event log path"
        }
    }

    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(sample_config, f, indent=2)

    print(f"Sample configuration created at: {output_path}")
