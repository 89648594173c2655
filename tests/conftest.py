import socket
import ssl

import pytest

from ftps_session import FTPSSession

CONTROL_PEER = ('192.0.2.10', 21)
CONTROL_LOCAL = ('192.0.2.1', 40000)
LISTENER_ADDR = ('0.0.0.0', 50000)
ACTIVE_PEER = ('198.51.100.7', 20)


class ReplyReader():
    """File-like reader over the replies the fake server still has to send."""

    def __init__(self, server):
        self.server = server
        self.closed = False

    def readline(self, limit=-1):
        if not self.server.replies:
            return ''
        return self.server.replies.pop(0) + '\r\n'

    def close(self):
        self.closed = True


class FakeSocket():
    family = socket.AF_INET

    def __init__(self, server, name, peer=CONTROL_PEER, local=CONTROL_LOCAL, payload=b''):
        self.server = server
        self.name = name
        self.peer = peer
        self.local = local
        self.payload = payload
        self.sent = b''
        self.shut = None
        self.timeout = None
        self.closed = False

    def makefile(self, mode='r', encoding=None):
        return ReplyReader(self.server)

    def sendall(self, data, flags=0):
        if self.name == 'control':
            self.server.wire.append(data.decode('utf-8').rstrip('\r\n'))
        else:
            self.sent += data

    def recv(self, bufsize, flags=0):
        chunk, self.payload = self.payload[:bufsize], self.payload[bufsize:]
        return chunk

    def recv_into(self, buffer, nbytes=0, flags=0):
        chunk = self.recv(nbytes or len(buffer))
        buffer[:len(chunk)] = chunk
        return len(chunk)

    def getpeername(self):
        return self.peer

    def getsockname(self):
        return self.local

    def shutdown(self, how):
        self.shut = how

    def settimeout(self, value):
        self.timeout = value

    def close(self):
        self.closed = True


class FakeTLSSession():
    def __init__(self, number):
        self.number = number

    def __repr__(self):
        return f'<FakeTLSSession {self.number}>'


class FakeTLSSocket():
    def __init__(self, raw, server_hostname, session, reused):
        self.raw = raw
        self.server_hostname = server_hostname
        self.session = session
        self.session_reused = reused
        self.unwrapped = False

    def version(self):
        return 'TLSv1.3'

    def cipher(self):
        return ('TLS_AES_256_GCM_SHA384', 'TLSv1.3', 256)

    def getpeercert(self):
        return {'subject': ((('commonName', 'ftp.example.com'),),)}

    def unwrap(self):
        self.unwrapped = True
        return self.raw

    def close(self):
        self.raw.close()

    def __getattr__(self, name):
        return getattr(self.raw, name)


class FakeSSLContext():
    """Stands in for ssl.SSLContext; records every handshake on the server's wire."""

    def __init__(self, server):
        self.server = server
        self.verify_mode = ssl.CERT_REQUIRED
        self.check_hostname = True
        self.resume = True
        self.fail_with = None
        self.issued = 0

    def wrap_socket(self, sock, server_hostname=None, session=None):
        self.server.wire.append(('TLS', sock.name, server_hostname, session))
        self.server.handshakes.append({'sock': sock.name, 'hostname': server_hostname, 'session': session})
        if self.fail_with is not None:
            raise self.fail_with
        if session is not None and self.resume:
            return FakeTLSSocket(sock, server_hostname, session, True)
        self.issued += 1
        return FakeTLSSocket(sock, server_hostname, FakeTLSSession(self.issued), False)


class FakeListener():
    def __init__(self, server):
        self.server = server
        self.timeout = None
        self.closed = False

    def getsockname(self):
        return LISTENER_ADDR

    def settimeout(self, value):
        self.timeout = value

    def accept(self):
        self.server.wire.append(('ACCEPT',))
        conn = FakeSocket(self.server, 'data', peer=ACTIVE_PEER, payload=self.server.data_payload)
        self.server.data_sockets.append(conn)
        return conn, ACTIVE_PEER

    def close(self):
        self.server.wire.append(('LISTENER CLOSED',))
        self.closed = True


class FakeServer():
    """
    Scripted FTP server. ``wire`` records, in order, TCP connects, commands sent
    on the control connection, TLS handshakes and listener events.
    """

    def __init__(self):
        self.wire = []
        self.replies = []
        self.handshakes = []
        self.control = None
        self.data_sockets = []
        self.listeners = []
        self.data_payload = b''
        self.context = FakeSSLContext(self)

    def reply(self, *lines):
        self.replies.extend(lines)

    def commands(self):
        return [event for event in self.wire if isinstance(event, str)]

    def create_connection(self, address, timeout=None, source_address=None):
        if self.control is None:
            self.wire.append(('CONNECT', address))
            self.control = FakeSocket(self, 'control')
            return self.control
        self.wire.append(('DATA', address))
        conn = FakeSocket(self, 'data', peer=address, payload=self.data_payload)
        self.data_sockets.append(conn)
        return conn

    def create_server(self, address, family=socket.AF_INET, backlog=None, **kwargs):
        self.wire.append(('LISTEN', address))
        listener = FakeListener(self)
        self.listeners.append(listener)
        return listener


@pytest.fixture
def server(monkeypatch):
    fake = FakeServer()
    monkeypatch.setattr(socket, 'create_connection', fake.create_connection)
    monkeypatch.setattr(socket, 'create_server', fake.create_server)
    return fake


@pytest.fixture
def explicit_session(server):
    return FTPSSession(context=server.context)


@pytest.fixture
def logged_in(server, explicit_session):
    server.reply('220 welcome',
                 '234 AUTH TLS successful',
                 '331 password required',
                 '230 logged in',
                 '200 PBSZ=0',
                 '200 Protection level set to P')
    explicit_session.connect('ftp.example.com')
    explicit_session.login('alice', 'secret')
    del server.wire[:]
    del server.handshakes[:]
    return explicit_session
