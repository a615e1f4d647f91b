import logging
from typing import Optional

from billex.config.billex_config import BillexConfig


def setup_logging(config: Optional[BillexConfig] = None) -> None:
    """Configure the 'billex' logger hierarchy from the logging section"""
    config = config or BillexConfig()
    level_name = str(config.get('logging.level', 'INFO')).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = logging.Formatter(
        config.get('logging.format', '%(asctime)s %(levelname)s %(name)s: %(message)s')
    )

    root = logging.getLogger('billex')
    root.setLevel(level)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    log_file = config.get('logging.file')
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
