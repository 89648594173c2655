from ftps_session.errors import (FTPSError, InvalidArgumentError, InvalidStateError, ProtocolNegotiationError,
                                 ProtocolReplyError, TLSHandshakeError, TLSUnavailableError, TLSVerificationError)
from ftps_session.session import EXPLICIT, FTP_PORT, IMPLICIT, IMPLICIT_PORT, FTPSSession
from ftps_session.sockets import ShutdownSafeSocket
from ftps_session.tls import TLS_AVAILABLE, TLSSessionCache, create_ssl_context, upgrade_socket
