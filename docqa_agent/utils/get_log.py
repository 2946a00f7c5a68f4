import logging
import os
from datetime import datetime
from logging import WARNING, FileHandler
from logging.handlers import TimedRotatingFileHandler

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class GetLog:
    logger = None
    log_folder = None

    @classmethod
    def get_log(cls, level="info", shared_log_folder=None):
        """Get logger and initialize logging system.

        Args:
            level (str): Log level name from the ``log.level`` config key
            shared_log_folder (str): Log folder shared by concurrent runs
        """
        if cls.logger is None:
            if shared_log_folder:
                cls.log_folder = shared_log_folder
            else:
                current_time = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
                cls.log_folder = os.path.join("./logs", current_time)

                # Report folders reuse the same timestamp
                os.environ["DOCQA_TIMESTAMP"] = current_time

            if not os.path.exists(cls.log_folder):
                os.makedirs(cls.log_folder)

            log_level = LEVELS.get(str(level).lower(), logging.INFO)
            cls.logger = logging.getLogger()
            cls.logger.setLevel(log_level)

            th = TimedRotatingFileHandler(
                filename=os.path.join(cls.log_folder, "log.log"),
                when="midnight",
                interval=1,
                backupCount=3,
                encoding="utf-8",
            )
            th.setLevel(log_level)

            error_handler = FileHandler(filename=os.path.join(cls.log_folder, "error.log"), encoding="utf-8")
            error_handler.setLevel(WARNING)

            fmt = "%(asctime)s %(levelname)s [%(name)s] [%(filename)s (%(funcName)s:%(lineno)d)] - %(message)s"
            fm = logging.Formatter(fmt)

            th.setFormatter(fm)
            cls.logger.addHandler(th)

            error_handler.setFormatter(fm)
            cls.logger.addHandler(error_handler)

            console_handler = logging.StreamHandler()
            console_handler.setLevel(log_level)
            console_handler.setFormatter(fm)
            cls.logger.addHandler(console_handler)

            # httpx logs every request at INFO
            logging.getLogger("httpx").setLevel(logging.WARNING)

        return cls.logger
