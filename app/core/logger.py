# app/core/logger.py
import logging
import sys
from app.middleware.request_id import get_request_id, get_user_id

LOG_FORMAT = (
    '{"level":"%(levelname)s","msg":"%(message)s",'
    '"logger":"%(name)s","time":"%(asctime)s","module":"%(module)s",'
    '"line":%(lineno)d,"request_id":"%(request_id)s","user_id":"%(user_id)s"}'
)

class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        record.user_id = get_user_id()
        return True

def _setup() -> logging.Logger:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(ContextFilter())
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.handlers = [handler]
    # sqlalchemy/httpx шумят на INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger("vidcredits")

logger = _setup()
