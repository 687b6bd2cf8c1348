"""Multi-level log level selection for the VMM, its SDK and the runtime."""

from __future__ import annotations

from enum import IntEnum

LOG_LEVEL_DEBUG = "debug"
LOG_LEVEL_ERROR = "error"
LOG_LEVEL_INFO = "info"
LOG_LEVEL_WARNING = "warning"

LOG_LEVEL_FIRECRACKER_DEBUG = "firecracker:debug"
LOG_LEVEL_FIRECRACKER_ERROR = "firecracker:error"
LOG_LEVEL_FIRECRACKER_INFO = "firecracker:info"
LOG_LEVEL_FIRECRACKER_WARNING = "firecracker:warning"
LOG_LEVEL_FIRECRACKER_OUTPUT = "firecracker:output"

LOG_LEVEL_FIRECRACKER_SDK_DEBUG = "firecracker-go-sdk:debug"
LOG_LEVEL_FIRECRACKER_SDK_ERROR = "firecracker-go-sdk:error"
LOG_LEVEL_FIRECRACKER_SDK_INFO = "firecracker-go-sdk:info"
LOG_LEVEL_FIRECRACKER_SDK_WARNING = "firecracker-go-sdk:warning"

LOG_LEVEL_FIRECRACKER_CONTAINERD_DEBUG = "firecracker-containerd:debug"
LOG_LEVEL_FIRECRACKER_CONTAINERD_ERROR = "firecracker-containerd:error"
LOG_LEVEL_FIRECRACKER_CONTAINERD_INFO = "firecracker-containerd:info"
LOG_LEVEL_FIRECRACKER_CONTAINERD_WARNING = "firecracker-containerd:warning"


class LogLevel(IntEnum):
    """Logger severity levels, from most to least severe."""

    PANIC = 0
    FATAL = 1
    ERROR = 2
    WARNING = 3
    INFO = 4
    DEBUG = 5
    TRACE = 6


class LogLevelError(ValueError):
    """Base class for invalid log level configurations."""


class LogLevelAlreadySetError(LogLevelError):
    """More than one top level log level was given."""

    def __init__(self) -> None:
        super().__init__("only one value for top level log level can be set")


class FirecrackerLogLevelAlreadySetError(LogLevelError):
    """More than one VMM log level was given."""

    def __init__(self) -> None:
        super().__init__("only one value of firecracker log level can be set")


class FirecrackerSDKLogLevelAlreadySetError(LogLevelError):
    """More than one SDK log level was given."""

    def __init__(self) -> None:
        super().__init__("only one value of firecracker-go-sdk log level can be set")


class FirecrackerContainerdLogLevelAlreadySetError(LogLevelError):
    """More than one runtime log level was given."""

    def __init__(self) -> None:
        super().__init__("only one value of firecracker-containerd log level can be set")


class InvalidLogLevelError(LogLevelError):
    """An unknown log level string was given."""

    def __init__(self, log_level: str) -> None:
        super().__init__(f'log level "{log_level}" is an invalid log level')
        self.log_level = log_level


_TOP_LEVELS: dict[str, tuple[str, LogLevel]] = {
    LOG_LEVEL_DEBUG: ("Debug", LogLevel.DEBUG),
    LOG_LEVEL_ERROR: ("Error", LogLevel.ERROR),
    LOG_LEVEL_INFO: ("Info", LogLevel.INFO),
    LOG_LEVEL_WARNING: ("Warning", LogLevel.WARNING),
}

_FIRECRACKER_LEVELS: dict[str, str] = {
    LOG_LEVEL_FIRECRACKER_DEBUG: "Debug",
    LOG_LEVEL_FIRECRACKER_ERROR: "Error",
    LOG_LEVEL_FIRECRACKER_INFO: "Info",
    LOG_LEVEL_FIRECRACKER_WARNING: "Warning",
}

_SDK_LEVELS: dict[str, LogLevel] = {
    LOG_LEVEL_FIRECRACKER_SDK_DEBUG: LogLevel.DEBUG,
    LOG_LEVEL_FIRECRACKER_SDK_ERROR: LogLevel.ERROR,
    LOG_LEVEL_FIRECRACKER_SDK_INFO: LogLevel.INFO,
    LOG_LEVEL_FIRECRACKER_SDK_WARNING: LogLevel.WARNING,
}

_CONTAINERD_LEVELS: dict[str, LogLevel] = {
    LOG_LEVEL_FIRECRACKER_CONTAINERD_DEBUG: LogLevel.DEBUG,
    LOG_LEVEL_FIRECRACKER_CONTAINERD_ERROR: LogLevel.ERROR,
    LOG_LEVEL_FIRECRACKER_CONTAINERD_INFO: LogLevel.INFO,
    LOG_LEVEL_FIRECRACKER_CONTAINERD_WARNING: LogLevel.WARNING,
}


class Helper:
    """Parses log level strings and answers which level each component uses.

    Raises a LogLevelError subclass on an unknown level or on conflicting
    levels for the same component.
    """

    def __init__(self, *log_levels: str, shim_debug: bool = False) -> None:
        self.log_levels: tuple[str, ...] = log_levels
        self.shim_debug = shim_debug
        self._top: str | None = None
        self._firecracker: str = ""
        self._firecracker_output = False
        self._sdk: LogLevel | None = None
        self._containerd: LogLevel | None = None
        for level in log_levels:
            self._apply(level.strip())

    def _apply(self, level: str) -> None:
        if level in _TOP_LEVELS:
            if self._top is not None:
                raise LogLevelAlreadySetError()
            self._top = level
        elif level in _FIRECRACKER_LEVELS:
            if self._firecracker:
                raise FirecrackerLogLevelAlreadySetError()
            self._firecracker = _FIRECRACKER_LEVELS[level]
        elif level == LOG_LEVEL_FIRECRACKER_OUTPUT:
            self._firecracker_output = True
        elif level in _SDK_LEVELS:
            if self._sdk is not None:
                raise FirecrackerSDKLogLevelAlreadySetError()
            self._sdk = _SDK_LEVELS[level]
        elif level in _CONTAINERD_LEVELS:
            if self._containerd is not None:
                raise FirecrackerContainerdLogLevelAlreadySetError()
            self._containerd = _CONTAINERD_LEVELS[level]
        else:
            raise InvalidLogLevelError(level)

    def firecracker_log_level(self) -> str:
        """The VMM log level name, or an empty string if none applies."""
        if self._firecracker:
            return self._firecracker
        if self._top is not None:
            return _TOP_LEVELS[self._top][0]
        return ""

    def log_firecracker_output(self) -> bool:
        """Whether the VMM's stdout and stderr should be sent to logging."""
        return self._top == LOG_LEVEL_DEBUG or self._firecracker_output

    def firecracker_sdk_log_level(self) -> tuple[LogLevel, bool]:
        """The SDK log level and whether any level applies."""
        if self._sdk is not None:
            return self._sdk, True
        if self._top is not None:
            return _TOP_LEVELS[self._top][1], True
        return LogLevel.PANIC, False

    def firecracker_containerd_log_level(self) -> tuple[LogLevel, bool]:
        """The runtime log level and whether any level applies."""
        if self._containerd is not None:
            return self._containerd, True
        if self._top == LOG_LEVEL_DEBUG or self.shim_debug:
            return LogLevel.DEBUG, True
        if self._top is not None:
            return _TOP_LEVELS[self._top][1], True
        return LogLevel.PANIC, False