"""Agent-side IO helpers."""

from __future__ import annotations

import logging
from urllib.parse import urlsplit

from fcmicro.vm.ioproxy import DoneFutures, IOProxy, _resolved

_LOG = logging.getLogger(__name__)

_AGENT_ONLY_SCHEMES = ("binary", "file")


def is_agent_only_io(stdout: str) -> bool:
    """Whether stdout targets a destination handled entirely inside the VM."""
    try:
        parsed = urlsplit(stdout)
    except ValueError as err:
        _LOG.debug("invalid URL %r: %s", stdout, err)
        return False
    return parsed.scheme in _AGENT_ONLY_SCHEMES


class NullIOProxy(IOProxy):
    """Proxy that does nothing, for when no logs are streamed from the agent."""

    def start(self, proc: object) -> DoneFutures:
        """Return two futures that are already resolved."""
        return _resolved(), _resolved()

    def close(self) -> None:
        """Do nothing."""

    def is_open(self) -> bool:
        """Always True, since this proxy does nothing."""
        return True