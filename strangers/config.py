# SPDX-License-Identifier: GPL-3.0-or-later
"""Common configuration loading logic for Strangers programs."""

import copy
import logging
import os
import os.path

import yaml

DEFAULT_CFG_DIR = "/etc/strangers"
LOADED_CONFIGS = {}

DEFAULTS = {
    "strangers-client": {
        "store": {"url": "http://localhost:8041/", "shared_secret": None},
        "relay": {"url": "ws://localhost:8042/relay"},
        "presence": {"staleness_threshold": 10, "count_interval": 5},
        "search": {
            "poll_interval": 1.5,
            "max_attempts": 20,
            "dial_delay": 0.5,
            "incoming_timeout": 15,
        },
        "transport": {
            "dial_timeout": 10,
            "open_timeout": 10,
            "recreate_delay": 2,
        },
        "identity": {"path": "~/.local/share/strangers/identity"},
        "monitoring": {"port": None},
    },
    "strangers-store": {
        "port": 8041,
        "shared_secret": None,
        "monitoring": {"port": None},
    },
    "strangers-relay": {"port": 8042},
}


class ConfigReadError(Exception):
    pass


def merge(base, override):
    """Return a deep copy of `base` updated recursively with `override`."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge(result[key], value)
        else:
            result[key] = value
    return result


def load(profile):
    """Load (if needed) and return the configuration for `profile`.

    Profile configurations are cached. Look for configuration profiles in the
    "CFG_DIR" environment variable if it is set, or in the DEFAULT_CFG_DIR
    otherwise. The file content is merged over the built-in defaults of the
    profile, if any. Raise a ConfigReadError if the profile has neither a
    file nor defaults, or if the file is not a YAML mapping.
    """

    try:
        return LOADED_CONFIGS[profile]
    except KeyError:
        pass

    cfg_filename = "{}.yml".format(profile)
    cfg_directory = os.environ.get("CFG_DIR", DEFAULT_CFG_DIR)
    cfg_path = os.path.join(cfg_directory, cfg_filename)

    try:
        with open(cfg_path, "r") as cfg_fp:
            cfg = yaml.safe_load(cfg_fp) or {}
    except FileNotFoundError:
        if profile not in DEFAULTS:
            raise ConfigReadError(
                "%s does not exist (specify CFG_DIR?)" % cfg_path
            )
        logging.info("%s not found, using built-in defaults", cfg_path)
        cfg = {}
    except (IOError, yaml.YAMLError) as exn:
        raise ConfigReadError("cannot read %s: %s" % (cfg_path, exn))

    if not isinstance(cfg, dict):
        raise ConfigReadError("%s is not a YAML mapping" % cfg_path)

    cfg = merge(DEFAULTS.get(profile, {}), cfg)
    LOADED_CONFIGS[profile] = cfg

    return cfg
