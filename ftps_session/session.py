import ftplib
import socket
import sys
import threading

import singer

from ftps_session import tls
from ftps_session.errors import (InvalidArgumentError, InvalidStateError, ProtocolNegotiationError,
                                 ProtocolReplyError)
from ftps_session.sockets import ShutdownSafeSocket, teardown

LOGGER = singer.get_logger()

EXPLICIT = 'explicit'
IMPLICIT = 'implicit'
FTPS_MODES = (EXPLICIT, IMPLICIT)

FTP_PORT = ftplib.FTP_PORT
IMPLICIT_PORT = 990


def valid_ftps_mode(mode):
    return mode in FTPS_MODES


class FTPSSession(ftplib.FTP):
    """
    ftplib.FTP with TLS on the control channel and on every data channel.

    In EXPLICIT mode the control connection starts in plaintext and is upgraded by
    ``login()`` after ``AUTH TLS``. In IMPLICIT mode it is upgraded by ``connect()``
    before the welcome message is read, and the default port is 990. Data connections
    are upgraded after the server accepted the transfer command, reusing the TLS
    session of the control channel. Certificates are always checked against the host
    passed to ``connect()``.
    """

    def __init__(self, host='', user='', passwd='', acct='', ftps_mode=EXPLICIT, ssl_context_params=None, *,
                 context=None, timeout=socket._GLOBAL_DEFAULT_TIMEOUT, source_address=None, encoding='utf-8'):
        if not valid_ftps_mode(ftps_mode):
            raise InvalidArgumentError(f'Invalid ftps_mode {ftps_mode!r}, expected one of {FTPS_MODES}')
        self._ftps_mode = ftps_mode
        self.ssl_context_params = dict(ssl_context_params or {})
        self._ssl_context = context
        self.session_cache = tls.TLSSessionCache()
        self.target_hostname = None
        # Guards every command/reply exchange and the control socket swap during AUTH
        self._lock = threading.RLock()
        super().__init__(host, user, passwd, acct, timeout, source_address, encoding=encoding)

    @property
    def ftps_mode(self):
        return self._ftps_mode

    @ftps_mode.setter
    def ftps_mode(self, ftps_mode):
        if self.connected:
            raise InvalidStateError('Cannot set ftps_mode while connected')
        if not valid_ftps_mode(ftps_mode):
            raise InvalidArgumentError(f'Invalid ftps_mode {ftps_mode!r}, expected one of {FTPS_MODES}')
        self._ftps_mode = ftps_mode

    @property
    def ftps_explicit(self):
        return self._ftps_mode == EXPLICIT

    @property
    def ftps_implicit(self):
        return self._ftps_mode == IMPLICIT

    @property
    def ssl_context(self):
        if self._ssl_context is None:
            self._ssl_context = tls.create_ssl_context(self.ssl_context_params)
        return self._ssl_context

    @ssl_context.setter
    def ssl_context(self, context):
        if self.connected:
            raise InvalidStateError('Cannot replace the SSL context while connected')
        self._ssl_context = context
        # A session can only be resumed under the context that created it
        self.session_cache.clear()

    @property
    def connected(self):
        return self.sock is not None

    @property
    def secured(self):
        return isinstance(self.sock, ShutdownSafeSocket)

    def _secure(self, sock):
        return tls.upgrade_socket(sock, self.target_hostname, self.ssl_context, self.session_cache)

    def _secure_data(self, conn):
        # TLS 1.3 tickets arrive after the control handshake, so take the current session
        if self.secured:
            self.session_cache.store(self.sock.session)
        return self._secure(conn)

    def connect(self, host='', port=None, timeout=-999, source_address=None):
        """Open the control connection, upgrading it right away in IMPLICIT mode."""
        if host != '':
            self.host = host
        if not port:
            port = IMPLICIT_PORT if self.ftps_implicit else FTP_PORT
        self.port = port
        if timeout != -999:
            self.timeout = timeout
        if self.timeout is not None and not self.timeout:
            raise ValueError('Non-blocking socket (timeout=0) is not supported')
        if source_address is not None:
            self.source_address = source_address
        self.target_hostname = self.host
        self.session_cache.clear()
        sys.audit('ftplib.connect', self, self.host, self.port)
        LOGGER.info(f'Connecting to {self.host}:{self.port} ({self._ftps_mode} FTPS)...')

        with self._lock:
            sock = socket.create_connection((self.host, self.port), self.timeout,
                                            source_address=self.source_address)
            self.af = sock.family
            try:
                if self.ftps_implicit:
                    sock = self._secure(sock)
                self.sock = sock
                self.file = self.sock.makefile('r', encoding=self.encoding)
                self.welcome = self.getresp()
            except Exception:
                self.sock = sock
                self.close()
                raise
        return self.welcome

    def login(self, user='', passwd='', acct='', auth='TLS'):
        """
        Secure the control channel (EXPLICIT mode), log in, then require a private data channel.
        """
        if not self.connected:
            raise InvalidStateError('Cannot log in before connecting')
        if self.ftps_explicit and not self.secured:
            self.auth(auth)
        resp = super().login(user, passwd, acct)
        self._negotiate('PBSZ 0')
        self._negotiate('PROT P')
        return resp

    def auth(self, auth='TLS'):
        """Send AUTH and swap the control socket for its TLS upgrade."""
        with self._lock:
            resp = self._exchange('AUTH ' + auth)
            if resp[:1] not in ('2', '3'):
                raise ProtocolReplyError(resp)
            try:
                self.sock = self._secure(self.sock)
            except Exception:
                self.close()
                raise
            self.file = self.sock.makefile('r', encoding=self.encoding)
        LOGGER.info(f'Control channel secured with AUTH {auth}')
        return resp

    def _negotiate(self, cmd):
        resp = self._exchange(cmd)
        if resp[:1] != '2':
            raise ProtocolNegotiationError(resp)
        return resp

    def _read_reply(self):
        # Like getresp() but leaves the reply class to the caller
        resp = self.getmultiline()
        if self.debugging:
            print('*resp*', self.sanitize(resp))
        self.lastresp = resp[:3]
        return resp

    def _exchange(self, cmd):
        with self._lock:
            self.putcmd(cmd)
            return self._read_reply()

    def sendcmd(self, cmd):
        with self._lock:
            return super().sendcmd(cmd)

    def voidcmd(self, cmd):
        with self._lock:
            return super().voidcmd(cmd)

    def _send_rest(self, rest):
        resp = self._exchange(f'REST {rest}')
        if resp[:1] != '3':
            raise ProtocolReplyError(resp)

    def _send_transfer_command(self, cmd):
        resp = self._exchange(cmd)
        # Some servers send a 2xx before the 1xx
        if resp[:1] == '2':
            resp = self._read_reply()
        if resp[:1] != '1':
            raise ProtocolReplyError(resp)
        return resp

    def _listen(self):
        listener = socket.create_server(('', 0), family=self.af, backlog=1)
        if self.timeout is not socket._GLOBAL_DEFAULT_TIMEOUT:
            listener.settimeout(self.timeout)
        return listener

    def _announce(self, listener):
        host = self.sock.getsockname()[0]
        port = listener.getsockname()[1]
        if self.af == socket.AF_INET:
            return self.sendport(host, port)
        return self.sendeprt(host, port)

    def ntransfercmd(self, cmd, rest=None):
        """
        Set up a TLS data connection for ``cmd``. Returns ``(conn, size)``.

        The data socket is upgraded only once the server answered ``cmd`` with a 1xx
        reply, so the server is ready to treat it as a TLS peer.
        """
        with self._lock:
            if self.passiveserver:
                conn, resp = self._passive_transfer(cmd, rest)
            else:
                conn, resp = self._active_transfer(cmd, rest)
        size = None
        if resp[:3] == '150':
            size = ftplib.parse150(resp)
        return conn, size

    def _passive_transfer(self, cmd, rest):
        host, port = self.makepasv()
        if rest is not None:
            self._send_rest(rest)
        conn = socket.create_connection((host, port), self.timeout, source_address=self.source_address)
        try:
            resp = self._send_transfer_command(cmd)
            LOGGER.debug(f'Securing passive data connection to {host}:{port} as {self.target_hostname}')
            return self._secure_data(conn), resp
        except Exception:
            conn.close()
            raise

    def _active_transfer(self, cmd, rest):
        listener = self._listen()
        try:
            self._announce(listener)
            if rest is not None:
                self._send_rest(rest)
            resp = self._send_transfer_command(cmd)
            conn, sockaddr = listener.accept()
            try:
                if self.timeout is not socket._GLOBAL_DEFAULT_TIMEOUT:
                    conn.settimeout(self.timeout)
                LOGGER.debug(f'Securing active data connection from {sockaddr[0]} as {self.target_hostname}')
                return self._secure_data(conn), resp
            except Exception:
                conn.close()
                raise
        finally:
            listener.close()

    def retrbinary(self, cmd, callback, blocksize=8192, rest=None):
        with self._lock:
            return super().retrbinary(cmd, callback, blocksize, rest)

    def retrlines(self, cmd, callback=None):
        with self._lock:
            return super().retrlines(cmd, callback)

    def storbinary(self, cmd, fp, blocksize=8192, callback=None, rest=None):
        with self._lock:
            return super().storbinary(cmd, fp, blocksize, callback, rest)

    def storlines(self, cmd, fp, callback=None):
        with self._lock:
            return super().storlines(cmd, fp, callback)

    def close(self):
        """Tear down the control connection and forget the cached TLS session."""
        with self._lock:
            sock = self.sock
            try:
                if sock is not None:
                    teardown(sock)
            finally:
                super().close()
                self.session_cache.clear()
