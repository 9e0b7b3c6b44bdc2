class MonitoringError(Exception):
    """Base class for errors raised by the block monitor itself"""


class DecodeError(MonitoringError, ValueError):
    """On-chain data did not have the expected shape"""


class IdentityDecodeError(DecodeError):
    pass


class EventShapeError(DecodeError):
    pass
