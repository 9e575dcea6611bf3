from __future__ import annotations

ENCODING = "utf-8"

#: Port used for server locators that don't specify one
DEFAULT_PORT = 11211

#: Maxiumum time to wait to establish a connection. ``None`` waits
#: for as long as the operating system allows.
CONNECT_TIMEOUT = None

#: Whether values are compressed before being stored
#: This is the default value for :attr:`~aemcached.CompressionConfig.enabled`
COMPRESS_ENABLED = True
#: Minimum payload size (in bytes) before compression is attempted
#: This is the default value for :attr:`~aemcached.CompressionConfig.threshold`
COMPRESS_THRESHOLD = 10_000
#: Minimum fraction the compressed payload must save to be stored compressed
#: This is the default value for :attr:`~aemcached.CompressionConfig.savings`
COMPRESS_SAVINGS = 0.20

#: Whether to start a new connect cycle as soon as a connection is lost
RECONNECT_ON_FAILURE = False
