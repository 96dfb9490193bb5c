"""Shared utilities: configuration, logging and LLM client factories."""

from conceptkb.utils.config import Config, load_config

__all__ = ["Config", "load_config"]
