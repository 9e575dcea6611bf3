from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .types import ServerAddress


class MemcachedError(Exception):
    """
    Base exception for any errors raised by the memcached
    servers
    """

    pass


class ClientError(MemcachedError):
    """
    Raised when memcached responds with ``CLIENT_ERROR``
    """

    pass


class ServerError(MemcachedError):
    """
    Raised when memcached responds with ``SERVER_ERROR``
    """

    pass


class StatusError(MemcachedError):
    """
    Raised when a binary protocol response carries a non-success
    status for an operation that has no falsy result to report it with
    """

    #: The numeric status from the response header
    status: int
    #: Human readable reason for :attr:`status`
    reason: str

    def __init__(self, status: int, reason: str):
        self.status = status
        self.reason = reason
        super().__init__(f"{reason} (status: {status:#06x})")


class FramingError(MemcachedError):
    """
    Raised when a response can't be parsed: a wrong magic byte,
    a malformed line or an unexpected token. Only the exchange that
    hit it fails.
    """

    pass


class NotEnoughData(Exception):
    """
    :meta private:
    """

    pass


class AemcachedConnectionError(ConnectionError):
    """
    Base exception for any connection errors encountered.
    """

    #: The memcached server where the connection error originated from
    address: ServerAddress

    def __init__(self, message: str, address: ServerAddress):
        self.address = address
        super().__init__(f"{message or 'Connection error'} (memcached instance: {address})")


class ServerUnavailable(AemcachedConnectionError):
    """
    Raised when a command is routed to a server that has no established
    connection, either because the dial failed or the connection was lost
    since the last connect cycle.
    """

    def __init__(self, address: ServerAddress):
        super().__init__("No connection established", address=address)
