from abc import ABC, abstractmethod
from typing import List
import logging


class AmplifierListener(ABC):
    """Receives command outcomes and discovery/connection events.

    This is the only way a caller learns whether a queued command reached
    the device; enqueueing itself is fire-and-forget.
    """

    @abstractmethod
    def command_completed(self, result):
        """Called once per sent command with a CommandResult."""
        pass

    def host_changed(self, host: str):
        pass

    def scan_started(self):
        pass

    def candidate_found(self, candidate):
        """Called for every new (deduplicated) device found during a scan."""
        pass

    def scan_finished(self, outcome, candidates: list):
        """Called when the scan window closes.

        Args:
            outcome: ScanOutcome.FOUND or ScanOutcome.NONE_FOUND
            candidates: candidates in discovery order
        """
        pass

    def connection_status_changed(self, status):
        pass


class MultiplexingListener(AmplifierListener):

    _listeners: List[AmplifierListener]

    def __init__(self):
        self._listeners = []

    def command_completed(self, result):
        for listener in self._listeners:
            listener.command_completed(result)

    def host_changed(self, host: str):
        for listener in self._listeners:
            listener.host_changed(host)

    def scan_started(self):
        for listener in self._listeners:
            listener.scan_started()

    def candidate_found(self, candidate):
        for listener in self._listeners:
            listener.candidate_found(candidate)

    def scan_finished(self, outcome, candidates: list):
        for listener in self._listeners:
            listener.scan_finished(outcome, candidates)

    def connection_status_changed(self, status):
        for listener in self._listeners:
            listener.connection_status_changed(status)

    def register_listener(self, listener: AmplifierListener):
        self._listeners.append(listener)

    def unregister_listener(self, listener: AmplifierListener):
        if listener in self._listeners:
            self._listeners.remove(listener)
        else:
            logging.info("Listener isn't registered")


class LoggingListener(AmplifierListener):

    def __init__(self, logger = logging):
        self.logger = logger

    def command_completed(self, result):
        self.logger.info(f"{result.command} -> {result.outcome.name}")

    def host_changed(self, host: str):
        self.logger.info(f"Device host: {host}")

    def scan_started(self):
        self.logger.info("Scanning for amplifiers")

    def candidate_found(self, candidate):
        self.logger.info(f"Found {candidate.name} at {candidate.address}")

    def scan_finished(self, outcome, candidates: list):
        self.logger.info(f"Scan finished: {outcome.name} ({len(candidates)} found)")

    def connection_status_changed(self, status):
        self.logger.info(f"Connection status: {status.name}")


def multiplexing(listener: AmplifierListener = None) -> MultiplexingListener:
    """Wrap a listener so more listeners can be registered next to it."""
    if isinstance(listener, MultiplexingListener):
        return listener
    multiplex_callback = MultiplexingListener()
    if listener is not None:
        multiplex_callback.register_listener(listener)
    return multiplex_callback
