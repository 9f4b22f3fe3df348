import os
import platform
import socket

import logging

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)


def get_hostname():
    names = set()
    try:
        names.add(os.uname()[1])
    except (AttributeError, OSError):
        pass
    try:
        names.add(platform.node())
    except OSError:
        pass
    try:
        names.add(socket.gethostname())
    except OSError:
        pass

    return '/'.join(x.split('.')[0] for x in sorted(names) if x)


def get_pid():
    return os.getpid()


_consumer_counter = 0


def get_next_counter() -> int:
    """Monotonic in-process counter (not persisted)."""
    global _consumer_counter
    _consumer_counter += 1
    return _consumer_counter


def build_consumer_id() -> str:
    """CONSUMER_ID = {HOSTNAME}:{PID}:{COUNTER}."""
    return f"{get_hostname()}:{get_pid()}:{get_next_counter()}"


if __name__ == '__main__':
    print(get_hostname())
    print(get_pid())
    print(build_consumer_id())
