import logging
from pathlib import Path
from typing import Optional


class LazyFlushingFileHandler(logging.Handler):
    """
    File handler lazy qui :
    1. Ne crée le fichier que lors du premier log réel (pas à l'initialisation)
    2. Flush immédiatement après chaque log
    """
    def __init__(self, filename: str, mode: str = 'a', encoding: str = 'utf-8'):
        super().__init__()
        self.filename = filename
        self.mode = mode
        self.encoding = encoding
        self._handler: Optional[logging.FileHandler] = None

    def _ensure_handler(self):
        """Crée le FileHandler réel uniquement lors du premier log"""
        if self._handler is None:
            Path(self.filename).parent.mkdir(parents=True, exist_ok=True)
            self._handler = logging.FileHandler(
                self.filename,
                mode=self.mode,
                encoding=self.encoding
            )
            self._handler.setFormatter(self.formatter)
            self._handler.setLevel(self.level)

    def emit(self, record):
        self._ensure_handler()
        if self._handler:
            self._handler.emit(record)
            self._handler.flush()

    def close(self):
        if self._handler:
            self._handler.close()
        super().close()


# Cache des loggers déjà initialisés
_LOGGER_CACHE: dict[str, logging.Logger] = {}

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_logger(
    log_file_name: str,
    logs_dir: Optional[Path] = None,
    enable_console: bool = False,
    attach_package: bool = True,
) -> logging.Logger:
    """
    Récupère un logger fichier pour un run de compilation.

    Args:
        log_file_name: Nom du fichier de log (ex: "compile.log")
        logs_dir: Répertoire des logs (par défaut: settings.logs_dir)
        enable_console: Activer sortie console en plus du fichier
        attach_package: Attacher aussi les handlers au logger "deeploom"
            pour capter les logs des modules (logging.getLogger(__name__))

    Returns:
        Logger configuré et mis en cache

    Note:
        Le fichier n'est créé qu'au premier log effectif.
    """
    cache_key = f"{log_file_name}:{enable_console}"
    if cache_key in _LOGGER_CACHE:
        return _LOGGER_CACHE[cache_key]

    if logs_dir is None:
        from deeploom.config.settings import get_settings
        logs_dir = get_settings().logs_dir

    logger = logging.getLogger(f"deeploom.run.{log_file_name.replace('.log', '')}")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    if logger.hasHandlers():
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()

    handlers: list[logging.Handler] = []

    if enable_console:
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)
        ch.setFormatter(logging.Formatter(_FORMAT))
        handlers.append(ch)

    fh_lazy = LazyFlushingFileHandler(str(Path(logs_dir) / log_file_name))
    fh_lazy.setLevel(logging.DEBUG)
    fh_lazy.setFormatter(logging.Formatter(_FORMAT))
    handlers.append(fh_lazy)

    for handler in handlers:
        logger.addHandler(handler)

    if attach_package:
        package_logger = logging.getLogger("deeploom")
        package_logger.setLevel(logging.DEBUG)
        for handler in handlers:
            package_logger.addHandler(handler)

    _LOGGER_CACHE[cache_key] = logger
    return logger
