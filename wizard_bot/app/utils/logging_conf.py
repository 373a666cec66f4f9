"""Configuración de logging para la API y el worker."""
import logging
import sys

FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> logging.Logger:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(FORMAT))
    root_logger.addHandler(console_handler)

    # Librerías ruidosas
    for noisy in ("urllib3", "httpx", "twilio.http_client", "telegram"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return root_logger


def mask_number(num: str) -> str:
    """Enmascara todos los dígitos menos los últimos 4."""
    if not num:
        return ""
    return ("•" * max(len(num) - 4, 0)) + num[-4:]
