"""
Simulation configuration.

Tunable constants live here rather than in the engines: phase lengths,
polling cadence, jitter decay, recount threshold, logistic scale.
Stored as a JSON file; missing keys fall back to DEFAULT_CONFIG.
"""

import json
import os
from pathlib import Path
from typing import TypedDict


CONFIG_ENV_VAR = "CAMPAIGN_SIM_CONFIG"


class SimConfig(TypedDict, total=False):
    """Simulator configuration."""
    tick_step_hours: int  # Clock advance per tick_once when unpaused
    max_fast_forward_hours: int  # One simulated year
    allow_rewind: bool  # set_game_time may move backwards
    phase_durations_hours: dict[str, int]  # Keyed by CampaignPhase value
    polling_interval_hours: int
    jitter_max: float  # Percentage points at full decay
    jitter_decay: dict[str, float]  # Keyed by CampaignPhase value
    undecided_by_phase: dict[str, float]  # Keyed by CampaignPhase value
    sample_sizes: dict[str, int]  # Keyed by PollType value
    polled_states: list[str]  # States that get a STATE poll on every cadence
    trend_epsilon: float
    recount_threshold: float
    logistic_scale: float
    default_volatility: float
    resolution_window_hours: int
    total_electors: int
    polling_seed: int | None


DEFAULT_CONFIG: SimConfig = {
    "tick_step_hours": 1,
    "max_fast_forward_hours": 24 * 365,
    "allow_rewind": True,
    # 4/8/10 ratio of the real-time schedule at 168x, plus one election day
    "phase_durations_hours": {
        "announcement": 672,
        "primary": 1344,
        "general_campaign": 1680,
        "election_day": 24,
    },
    "polling_interval_hours": 72,
    "jitter_max": 3.0,
    "jitter_decay": {
        "announcement": 1.0,
        "primary": 0.75,
        "general_campaign": 0.5,
        "election_day": 0.25,
        "resolved": 0.1,
    },
    "undecided_by_phase": {
        "announcement": 20.0,
        "primary": 15.0,
        "general_campaign": 10.0,
        "election_day": 4.0,
        "resolved": 0.0,
    },
    "sample_sizes": {
        "national": 1200,
        "state": 650,
        "tracking": 800,
        "exit": 1000,
    },
    "polled_states": [],
    "trend_epsilon": 0.5,
    "recount_threshold": 0.5,
    "logistic_scale": 2.0,
    "default_volatility": 1.5,
    "resolution_window_hours": 720,
    "total_electors": 538,
    "polling_seed": None,
}


def default_config() -> SimConfig:
    """Deep-enough copy of the defaults (nested dicts and lists are copied too)."""
    config: SimConfig = {}
    for key, value in DEFAULT_CONFIG.items():
        if isinstance(value, dict):
            value = dict(value)
        elif isinstance(value, list):
            value = list(value)
        config[key] = value
    return config


def merge_config(overrides: dict | None) -> SimConfig:
    """Layer overrides on top of the defaults. Nested phase tables merge per key."""
    config = default_config()
    for key, value in (overrides or {}).items():
        current = config.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            current.update(value)
        else:
            config[key] = value
    return config


def get_config_path(path: Path | str | None = None) -> Path:
    """Resolve the config file: explicit path, then env var, then ./campaign_sim.json."""
    if path is not None:
        return Path(path)
    return Path(os.environ.get(CONFIG_ENV_VAR, "campaign_sim.json"))


def load_config(path: Path | str | None = None) -> SimConfig:
    """Load config from file, or return defaults if not found."""
    config_path = get_config_path(path)

    if not config_path.exists():
        return default_config()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            saved = json.load(f)
        return merge_config(saved)
    except (json.JSONDecodeError, IOError):
        return default_config()


def save_config(config: SimConfig, path: Path | str | None = None) -> bool:
    """Save config to file. Returns True on success."""
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
        return True
    except IOError:
        return False
