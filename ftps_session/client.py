import os
import tempfile
from datetime import datetime

import backoff
import pytz
import singer

from ftps_session.session import EXPLICIT, FTPSSession

LOGGER = singer.get_logger()


def handle_backoff(details):
    LOGGER.warning(
        "FTPS Connection closed unexpectedly. Waiting {wait} seconds and retrying...".format(**details)
    )


class FTPSConnection():
    """
    Lazily connected FTPS session built from a config dict.

    Only transport resets are retried. TLS handshake, certificate and protocol
    errors always reach the caller.
    """

    def __init__(self, host, username, password=None, port=None, ftps_mode=EXPLICIT, ssl_context_params=None,
                 passive=True, timeout=None, connect_timeout=None):
        self.host = host
        self.username = username
        self.password = password
        self.port = int(port) if port else None
        self.ftps_mode = ftps_mode
        self.ssl_context_params = ssl_context_params or {}
        self.passive = passive
        self.timeout = timeout or 300  # Default timeout: 5 minutes for data transfers
        self.connect_timeout = connect_timeout or 30
        self.__ftp = None
        self.current_dir = None  # Restored after a reconnect

    # If the connection is snapped during the connect flow, retry for up to a
    # minute. 2^1 + 2^2 + ... + 2^5
    @backoff.on_exception(
        backoff.expo,
        (EOFError, ConnectionResetError),
        max_tries=6,
        on_backoff=handle_backoff,
        jitter=None,
        factor=2)
    def __connect(self):
        LOGGER.info(f'Creating new connection to FTPS at {self.host}:{self.port or "default port"}...')
        ftps = FTPSSession(ftps_mode=self.ftps_mode, ssl_context_params=self.ssl_context_params,
                           timeout=self.connect_timeout)
        try:
            ftps.connect(self.host, self.port)
            # Data connections get the longer transfer timeout
            ftps.timeout = self.timeout
            LOGGER.debug(f'Login attempt - username: {self.username!r}, password length: {len(self.password) if self.password else 0}')
            ftps.login(user=self.username, passwd=self.password)
            ftps.set_pasv(self.passive)
            if self.current_dir:
                ftps.cwd(self.current_dir)
        except Exception:
            ftps.close()
            raise
        LOGGER.info('Connection successful')
        self.__ftp = ftps

    @property
    def ftp(self):
        if self.__ftp is None:
            self.__connect()
        return self.__ftp

    @ftp.setter
    def ftp(self, ftp):
        self.__ftp = ftp

    def reconnect(self):
        self.close()
        return self.ftp

    def close(self):
        if self.__ftp:
            try:
                self.__ftp.quit()
            except Exception as ex:
                LOGGER.debug(f'QUIT failed, closing connection: {type(ex).__name__}: {ex}')
                self.__ftp.close()
            self.__ftp = None

    def cwd(self, path):
        resp = self.ftp.cwd(path)
        self.current_dir = self.ftp.pwd()
        return resp

    def list_files(self, path='.'):
        return self.ftp.nlst(path)

    def _retry_transfer(self, transfer, description):
        try:
            return transfer()
        except (EOFError, ConnectionResetError, TimeoutError) as e:
            LOGGER.warning(f"Connection error during {description}, reconnecting and retrying: {type(e).__name__}: {e}")
            self.reconnect()
            return transfer()

    def download(self, remote_path, local_path, resume=False):
        """Download ``remote_path`` to ``local_path``, continuing a partial local file when ``resume`` is set."""
        def transfer():
            rest = None
            if resume and os.path.exists(local_path) and os.path.getsize(local_path) > 0:
                rest = os.path.getsize(local_path)
                LOGGER.info(f'Resuming download of {remote_path} at offset {rest}')
            with open(local_path, 'ab' if rest else 'wb') as local_file:
                return self.ftp.retrbinary(f'RETR {remote_path}', local_file.write, rest=rest)

        return self._retry_transfer(transfer, f'download of {remote_path}')

    def upload(self, local_path, remote_path):
        def transfer():
            with open(local_path, 'rb') as local_file:
                return self.ftp.storbinary(f'STOR {remote_path}', local_file)

        return self._retry_transfer(transfer, f'upload of {remote_path}')

    def get_file_handle(self, remote_path):
        """ Downloads ``remote_path`` into a temporary file and returns it, rewound. """
        def transfer():
            handle = tempfile.TemporaryFile()
            try:
                self.ftp.retrbinary(f'RETR {remote_path}', handle.write)
            except BaseException:
                handle.close()
                raise
            handle.seek(0)
            return handle

        return self._retry_transfer(transfer, f'download of {remote_path}')

    def _parse_mdtm_date(self, date_str):
        """Parse MDTM date format (YYYYMMDDHHMMSS[.sss]) to an aware UTC datetime"""
        try:
            if len(date_str) >= 14:
                return datetime.strptime(date_str[:14], '%Y%m%d%H%M%S').replace(tzinfo=pytz.UTC)
        except ValueError:
            pass
        return None

    def modified_time(self, path):
        resp = self.ftp.sendcmd(f'MDTM {path}')
        parts = resp.split()
        last_modified = self._parse_mdtm_date(parts[1]) if len(parts) > 1 else None
        if last_modified is None:
            LOGGER.warning("Cannot read m_time for file %s from reply %r", path, resp)
        return last_modified


def connection(config):
    ssl_context_params = dict(config.get('tls') or {})
    if config.get('verify_tls') is False:
        ssl_context_params.setdefault('verify', False)
    return FTPSConnection(config['host'],
                          config['username'],
                          password=config.get('password'),
                          port=config.get('port'),
                          ftps_mode=config.get('ftps_mode') or EXPLICIT,
                          ssl_context_params=ssl_context_params,
                          passive=config.get('passive_mode', True),
                          timeout=config.get('timeout'),
                          connect_timeout=config.get('connect_timeout'))
