"""Configuration helpers shared across launcher packages."""

from dl_common.config.env import parse_bool_env, parse_float_env

__all__ = ["parse_bool_env", "parse_float_env"]
