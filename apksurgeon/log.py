"""Tagged console logging: [INFO] / [SUCCESS] / [WARNING] / [ERROR]."""

import logging

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

logger = logging.getLogger("apksurgeon")


def _p(level: int, msg: str) -> None:
    logger.log(level, msg)

def info(m):  _p(logging.INFO,    m)
def ok(m):    _p(SUCCESS,         m)
def warn(m):  _p(logging.WARNING, m)
def err(m):   _p(logging.ERROR,   m)


def setup_logging(verbose: bool = False) -> None:
    if verbose:
        fmt, level = '%(asctime)s - %(name)s - %(levelname)s - %(message)s', logging.DEBUG
    else:
        fmt, level = '[%(levelname)s] %(message)s', logging.INFO
    logging.basicConfig(format=fmt, level=level, force=True)
