"""Reloading of the configuration file when it changes."""

from __future__ import annotations

import abc
import logging
import os
import threading
from typing import Optional

from .config import Config, load_config_yaml


class ConfigReceiver(abc.ABC):
    """Something that takes configuration updates."""

    @abc.abstractmethod
    def load_config(self, config: Config) -> None:
        """Apply a new configuration."""


class ConfigWatcher:
    """Polls a configuration file and passes each new version to a receiver."""

    def __init__(
        self,
        path: str,
        receiver: ConfigReceiver,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.path = path
        self.receiver = receiver
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self._last_mod: Optional[int] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def load(self) -> bool:
        """Load the file if it changed since the last load; return whether it was loaded."""
        mtime = os.stat(self.path).st_mtime_ns
        if self._last_mod is not None and mtime <= self._last_mod:
            return False
        self._last_mod = mtime
        self.logger.info("loading a new config from %s", self.path)
        self.receiver.load_config(load_config_yaml(self.path))
        return True

    def _run(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.load()
            except Exception as exc:
                self.logger.error("failed to update config: %s", exc)
        self.logger.info("stop watching the config file %s", self.path)

    def start(self, interval: float) -> None:
        """Start polling every ``interval`` seconds in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("watcher is already running")
        self._stop.clear()
        self.logger.info("start watching the config file %s every %ss", self.path, interval)
        self._thread = threading.Thread(
            target=self._run, args=(interval,), name="config-watcher", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop polling and wait for the background thread to end."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def __enter__(self) -> ConfigWatcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


def start_config_watcher(
    path: str,
    receiver: ConfigReceiver,
    interval: float,
    logger: Optional[logging.Logger] = None,
) -> ConfigWatcher:
    """Load the configuration once, then keep watching it; return the running watcher."""
    watcher = ConfigWatcher(path, receiver, logger)
    try:
        watcher.load()
    except Exception as exc:
        raise RuntimeError(f"failed to load initial config: {exc}") from exc
    watcher.start(interval)
    return watcher