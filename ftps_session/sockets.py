import socket

import singer

LOGGER = singer.get_logger()

CLOSE_READ_TIMEOUT = 3


class ShutdownSafeSocket():
    """
    Wraps a connected TLS socket so the close sequence shutdown -> settimeout -> recv
    never blocks or raises.

    ``shutdown`` only marks the socket as shut down, ``settimeout`` is ignored and
    reads after shutdown return no data. Everything else goes to the TLS socket.
    """

    def __init__(self, sock):
        self._sock = sock
        self._shutdown = False

    @property
    def wrapped(self):
        return self._sock

    @property
    def is_shutdown(self):
        return self._shutdown

    def shutdown(self, how=socket.SHUT_RDWR):
        self._shutdown = True

    def settimeout(self, value):
        pass

    def recv(self, bufsize, flags=0):
        if self._shutdown:
            return b''
        return self._sock.recv(bufsize, flags)

    def recv_into(self, buffer, nbytes=0, flags=0):
        if self._shutdown:
            return 0
        return self._sock.recv_into(buffer, nbytes, flags)

    def read(self, len=1024, buffer=None):
        if self._shutdown:
            return b''
        if buffer is not None:
            return self._sock.read(len, buffer)
        return self._sock.read(len)

    def close(self):
        self._sock.close()

    def __getattr__(self, name):
        return getattr(self._sock, name)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        try:
            if exc_type is None and not self._shutdown:
                # Send close_notify so the server can tell a complete upload from a truncated one
                try:
                    self._sock.unwrap()
                except (OSError, ValueError) as ex:
                    LOGGER.debug(f'TLS close_notify on data connection failed: {type(ex).__name__}: {ex}')
        finally:
            self.close()

    def __repr__(self):
        return f'<ShutdownSafeSocket shutdown={self._shutdown} sock={self._sock!r}>'


def teardown(sock, read_timeout=CLOSE_READ_TIMEOUT):
    """Half-close ``sock``, wait briefly for the peer's EOF, then close it."""
    try:
        sock.shutdown(socket.SHUT_WR)
        sock.settimeout(read_timeout)
        sock.recv(1024)
    except OSError as ex:
        LOGGER.debug(f'Ignoring error while shutting down socket: {type(ex).__name__}: {ex}')
    finally:
        sock.close()
