class H2cError(Exception):
    """Base class for every failure a command reports back to the operator."""


class UsageError(H2cError):
    pass


class DialFailed(H2cError):
    pass


class HandshakeFailed(H2cError):
    pass


class NotConnected(H2cError):
    pass


class ConnectionClosed(H2cError):
    pass


class PingFailed(H2cError):
    pass


class RequestFailed(H2cError):
    pass


class MissingPath(H2cError):
    pass


class InvalidMethod(H2cError):
    pass


class InvalidSettingFormat(H2cError):
    pass


class InvalidSettingValue(H2cError):
    pass


class UnknownSetting(H2cError):
    pass
