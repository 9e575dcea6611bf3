from __future__ import annotations

import enum

LINE_END = b"\r\n"


class Commands(bytes, enum.Enum):
    GET = b"get"
    GETS = b"gets"
    SET = b"set"
    ADD = b"add"
    REPLACE = b"replace"
    APPEND = b"append"
    PREPEND = b"prepend"
    CAS = b"cas"
    INCR = b"incr"
    DECR = b"decr"
    DELETE = b"delete"
    STATS = b"stats"
    FLUSH_ALL = b"flush_all"
    VERSION = b"version"


class Responses(bytes, enum.Enum):
    VALUE = b"VALUE"
    END = b"END"
    STAT = b"STAT"
    STORED = b"STORED"
    NOT_STORED = b"NOT_STORED"
    EXISTS = b"EXISTS"
    NOT_FOUND = b"NOT_FOUND"
    DELETED = b"DELETED"
    OK = b"OK"
    VERSION = b"VERSION"
    ERROR = b"ERROR"
    CLIENT_ERROR = b"CLIENT_ERROR"
    SERVER_ERROR = b"SERVER_ERROR"
