import logging
import os
import sys

LOG_LINE = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Cores ANSI por nível
LEVEL_COLORS = {
    logging.DEBUG: "\x1b[38;21m",
    logging.INFO: "\x1b[38;5;39m",
    logging.WARNING: "\x1b[38;5;226m",
    logging.ERROR: "\x1b[38;5;196m",
    logging.CRITICAL: "\x1b[31;1m",
}
RESET = "\x1b[0m"


class ColoredFormatter(logging.Formatter):
    """Formatter com cores para o terminal; o arquivo de log recebe a linha sem cor."""

    def __init__(self):
        super().__init__(LOG_LINE, datefmt=DATE_FORMAT)

    def format(self, record):
        line = super().format(record)
        color = LEVEL_COLORS.get(record.levelno)
        return f"{color}{line}{RESET}" if color else line


class SessionLogAdapter(logging.LoggerAdapter):
    """Prefixa cada linha com a campanha e a sessão: '[campanha 3 | sessão 42] ...'"""

    def process(self, msg, kwargs):
        return f"[campanha {self.extra['campaign_id']} | sessão {self.extra['session_id']}] {msg}", kwargs


def session_logger(logger: logging.Logger, session) -> SessionLogAdapter:
    return SessionLogAdapter(logger, {"campaign_id": session.campaign_id, "session_id": session.id})


def setup_logger(name: str = "flowengine", level: str = None) -> logging.Logger:
    """
    Configura e retorna um logger com saída no console e em arquivo.

    Args:
        name: Nome do logger (geralmente __name__ do módulo)
        level: Nível de log. Quando omitido usa LOG_LEVEL do ambiente (padrão INFO).

    O arquivo vem de LOG_FILE (padrão flowengine_debug.log); LOG_FILE vazio desliga o arquivo.
    """
    logger = logging.getLogger(name)

    # Já configurado por outro import
    if logger.handlers:
        return logger

    log_level = getattr(logging, (level or os.getenv("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logger.setLevel(log_level)
    logger.propagate = False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ColoredFormatter())
    logger.addHandler(console_handler)

    log_file = os.getenv("LOG_FILE", "flowengine_debug.log")
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_LINE, datefmt=DATE_FORMAT))
        logger.addHandler(file_handler)

    return logger


# Logger padrão da aplicação
logger = setup_logger("flowengine")
