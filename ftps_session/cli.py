import singer
from singer import utils

from ftps_session import client

LOGGER = singer.get_logger()

REQUIRED_CONFIG_KEYS = ["host", "username"]


def check_connection(config):
    """Connect, log in and list ``remote_dir``. Returns the listed names."""
    conn = client.connection(config)
    try:
        remote_dir = config.get('remote_dir') or '.'
        files = conn.list_files(remote_dir)
        LOGGER.info('Found %s entries in "%s"', len(files), remote_dir)
        for name in files:
            LOGGER.info("Found entry: %s", name)
        return files
    finally:
        conn.close()


@utils.handle_top_exception(LOGGER)
def main():
    args = utils.parse_args(REQUIRED_CONFIG_KEYS)
    check_connection(args.config)


if __name__ == "__main__":
    main()
