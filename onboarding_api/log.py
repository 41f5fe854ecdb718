import logging
import re
import sys

_PRIVATE_KEY_RE = re.compile(
    r"-----BEGIN ([A-Z ]*)PRIVATE KEY-----.*?-----END \1PRIVATE KEY-----",
    re.DOTALL,
)


class RedactPrivateKeyFilter(logging.Filter):
    """Masks PEM private key blocks in any log record passing the handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if "PRIVATE KEY-----" in message:
            record.msg = _PRIVATE_KEY_RE.sub("[REDACTED PRIVATE KEY]", message)
            record.args = ()
        return True


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for handler in root.handlers:
        if any(isinstance(f, RedactPrivateKeyFilter) for f in handler.filters):
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    handler.addFilter(RedactPrivateKeyFilter())
    root.addHandler(handler)
