try:
    import ssl
except ImportError:
    ssl = None

import singer

from ftps_session.errors import (InvalidArgumentError, TLSHandshakeError, TLSUnavailableError,
                                 TLSVerificationError)
from ftps_session.sockets import ShutdownSafeSocket

LOGGER = singer.get_logger()

TLS_AVAILABLE = ssl is not None

# Keys of an ssl_context_params mapping that are loaded together
_CERT_CHAIN_KEYS = ('certfile', 'keyfile', 'password')
_VERIFY_LOCATION_KEYS = ('cafile', 'capath', 'cadata')
_KNOWN_KEYS = frozenset(('verify', 'verify_mode', 'check_hostname', 'ciphers', 'minimum_version',
                         'maximum_version', 'options') + _CERT_CHAIN_KEYS + _VERIFY_LOCATION_KEYS)


def require_tls():
    if not TLS_AVAILABLE:
        raise TLSUnavailableError('TLS support (the ssl module) is not available in this Python runtime')


class TLSSessionCache():
    """Holds the most recent TLS session of one FTPS session, offered as a resumption hint."""

    def __init__(self):
        self._session = None

    @property
    def session(self):
        return self._session

    def store(self, session):
        # TLS 1.3 servers may not have sent a ticket yet; keep the previous session then
        if session is not None:
            self._session = session

    def clear(self):
        self._session = None

    def __bool__(self):
        return self._session is not None


def _enum_value(enum_cls, value, key):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls[str(value)]
    except KeyError:
        raise InvalidArgumentError(f'Invalid value for TLS parameter "{key}": {value!r}') from None


def create_ssl_context(params=None):
    """
    Create the client SSLContext used for the control channel and every data channel.

    ``params`` is a mapping of TLS options. Certificate verification, including host
    name checking, is on unless ``verify`` is False or ``verify_mode`` is CERT_NONE.
    """
    require_tls()
    params = dict(params or {})
    unknown = sorted(set(params) - _KNOWN_KEYS)
    if unknown:
        raise InvalidArgumentError(f'Unknown TLS parameters: {", ".join(unknown)}')

    ctx = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    ctx.options |= ssl.OP_NO_SSLv3

    locations = {k: params[k] for k in _VERIFY_LOCATION_KEYS if params.get(k)}
    if locations:
        ctx.load_verify_locations(**locations)
    if params.get('certfile'):
        ctx.load_cert_chain(**{k: params[k] for k in _CERT_CHAIN_KEYS if params.get(k)})
    elif params.get('keyfile'):
        raise InvalidArgumentError('TLS parameter "keyfile" requires "certfile"')

    if 'verify_mode' in params:
        verify_mode = _enum_value(ssl.VerifyMode, params['verify_mode'], 'verify_mode')
    elif params.get('verify', True) is False:
        verify_mode = ssl.CERT_NONE
    else:
        verify_mode = ssl.CERT_REQUIRED
    verifying = verify_mode != ssl.CERT_NONE
    check_hostname = params.get('check_hostname', verifying)
    if check_hostname and not verifying:
        raise InvalidArgumentError('TLS parameter "check_hostname" cannot be enabled without certificate verification')
    if verifying and not check_hostname:
        raise InvalidArgumentError('Host name checking can only be turned off together with certificate verification')
    # check_hostname must be disabled before verify_mode can drop to CERT_NONE
    ctx.check_hostname = False
    ctx.verify_mode = verify_mode
    ctx.check_hostname = bool(check_hostname)

    if params.get('ciphers'):
        try:
            ctx.set_ciphers(params['ciphers'])
        except ssl.SSLError as ex:
            raise InvalidArgumentError(f'Invalid TLS cipher list {params["ciphers"]!r}: {ex}') from ex
    if params.get('minimum_version'):
        ctx.minimum_version = _enum_value(ssl.TLSVersion, params['minimum_version'], 'minimum_version')
    if params.get('maximum_version'):
        ctx.maximum_version = _enum_value(ssl.TLSVersion, params['maximum_version'], 'maximum_version')
    if params.get('options'):
        ctx.options |= int(params['options'])
    return ctx


def check_verification(context):
    """Reject a context that verifies certificates but not the host name they were issued for."""
    if context.verify_mode != ssl.CERT_NONE and not context.check_hostname:
        raise InvalidArgumentError('SSL context verifies certificates without checking the host name; '
                                   'set check_hostname or disable verification with CERT_NONE')


def upgrade_socket(sock, hostname, context, cache):
    """
    Run a TLS client handshake over the connected socket ``sock``.

    The cached session is offered for resumption and the certificate is checked
    against ``hostname`` (the host the control connection was opened to), not the
    address ``sock`` is connected to. Returns a ShutdownSafeSocket; the raw socket
    is closed when the handshake fails.
    """
    require_tls()
    try:
        check_verification(context)
        tls_sock = context.wrap_socket(sock, server_hostname=hostname, session=cache.session)
    except ssl.SSLCertVerificationError as ex:
        sock.close()
        reason = getattr(ex, 'verify_message', None) or ex
        raise TLSVerificationError(f'Certificate verification for {hostname} failed: {reason}') from ex
    except (ssl.SSLError, OSError) as ex:
        sock.close()
        raise TLSHandshakeError(f'TLS handshake with {hostname} failed: {ex}') from ex
    except BaseException:
        sock.close()
        raise

    cache.store(tls_sock.session)
    LOGGER.debug(f'TLS established with {hostname}: {tls_sock.version()} {tls_sock.cipher()[0]}, '
                 f'session reused: {tls_sock.session_reused}')
    if context.verify_mode != ssl.CERT_NONE:
        LOGGER.debug(f'Peer certificate: {tls_sock.getpeercert()}')
    return ShutdownSafeSocket(tls_sock)
