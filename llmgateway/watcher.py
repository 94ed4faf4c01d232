"""Polling watcher that reloads the YAML configuration file when it changes."""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
import time
from itertools import zip_longest
from typing import Any

import yaml


def _read_config(path: str) -> tuple[dict[str, Any], str]:
    with open(path, encoding="utf-8") as fh:
        raw = fh.read()
    try:
        config = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ValueError(f"cannot parse config file {path}: {exc}") from exc
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ValueError(f"config file {path} does not hold a mapping")
    return config, raw


class ConfigWatcher:
    """Loads a config file into a receiver whenever its modification time advances.

    When the file does not exist, the default configuration is loaded once instead.
    """

    def __init__(
        self,
        path: str | os.PathLike[str],
        receiver: Any,
        logger: logging.Logger | None = None,
        default_config: dict[str, Any] | None = None,
    ) -> None:
        self.path = os.fspath(path)
        self.receiver = receiver
        self.logger = logger or logging.getLogger(__name__)
        self.default_config = default_config if default_config is not None else {}
        self.last_mod_ns = 0
        self.current = ""
        self.using_default = False

    def load_config(self) -> None:
        """Load the file (or the default) into the receiver if anything changed."""
        try:
            stat = os.stat(self.path)
        except FileNotFoundError:
            stat = None

        if stat is None:
            # A missing file must not stop the process; run with the default instead.
            if self.using_default:
                return
            self.logger.info(
                "config file does not exist; loading default config: path=%s", self.path
            )
            self.last_mod_ns = time.time_ns()
            self.using_default = True
            config = copy.deepcopy(self.default_config)
            raw = yaml.safe_dump(self.default_config)
        else:
            self.using_default = False
            if stat.st_mtime_ns <= self.last_mod_ns:
                return
            self.logger.info("loading a new config: path=%s", self.path)
            self.last_mod_ns = stat.st_mtime_ns
            config, raw = _read_config(self.path)

        if self.logger.isEnabledFor(logging.DEBUG):
            previous, self.current = self.current, raw
            self.diff(previous, raw)

        self.receiver.load_config(config)

    def watch(self, stop_event: threading.Event, tick: float) -> None:
        """Reload every ``tick`` seconds until ``stop_event`` is set."""
        while not stop_event.wait(tick):
            try:
                self.load_config()
            except Exception as exc:  # keep watching whatever went wrong
                self.logger.error("failed to update config: %s", exc)
        self.logger.info("stop watching the config file: path=%s", self.path)

    def diff(self, old_config: str, new_config: str) -> None:
        """Log each line that differs between two config texts."""
        if not old_config:
            return
        pairs = zip_longest(old_config.split("\n"), new_config.split("\n"), fillvalue="")
        for number, (old_line, new_line) in enumerate(pairs, start=1):
            old_line, new_line = old_line.strip(), new_line.strip()
            if old_line != new_line:
                self.logger.debug(
                    "config line changed: line=%d path=%s old=%s new=%s",
                    number,
                    json.dumps(self.path),
                    json.dumps(old_line),
                    json.dumps(new_line),
                )


def start_config_watcher(
    path: str | os.PathLike[str],
    receiver: Any,
    logger: logging.Logger | None = None,
    tick: float = 5.0,
    stop_event: threading.Event | None = None,
    default_config: dict[str, Any] | None = None,
) -> ConfigWatcher:
    """Load the config once, then keep watching it on a daemon thread."""
    watcher = ConfigWatcher(path, receiver, logger, default_config)
    try:
        watcher.load_config()
    except Exception as exc:
        raise RuntimeError(f"failed to load initial config: {exc}") from exc
    watcher.logger.info(
        "start watching the config file: path=%s interval=%ss", watcher.path, tick
    )
    thread = threading.Thread(
        target=watcher.watch,
        args=(stop_event if stop_event is not None else threading.Event(), tick),
        daemon=True,
    )
    thread.start()
    return watcher