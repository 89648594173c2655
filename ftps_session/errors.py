from ftplib import error_reply


class FTPSError(Exception):
    """Base class for every error raised by ftps_session."""


class InvalidArgumentError(FTPSError, ValueError):
    pass


class InvalidStateError(FTPSError, RuntimeError):
    pass


class TLSUnavailableError(FTPSError, RuntimeError):
    pass


class TLSHandshakeError(FTPSError, OSError):
    pass


class TLSVerificationError(TLSHandshakeError):
    pass


class ProtocolReplyError(FTPSError, error_reply):
    """Unexpected reply during negotiation or transfer setup.

    The raw reply text is kept on ``reply`` and its three digit code on ``code``.
    """

    def __init__(self, reply):
        super().__init__(reply)
        self.reply = reply
        self.code = reply[:3]


class ProtocolNegotiationError(ProtocolReplyError):
    pass
