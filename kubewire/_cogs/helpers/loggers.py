"""
Log formatting for the requests and watch-streams of the API client.

Messages logged through :class:`RequestLogger` carry a reference to the HTTP
request they relate to (its method and URL). The prefixing formatters show
that reference in front of the message in plain-text logs; the JSON formatters
put it into a separate field for the log parsers.

The library never configures the logging on its own. The applications can use
:func:`configure` for a quick setup, or their own logging setup as usual.
"""
import copy
import enum
import logging
from collections.abc import MutableMapping
from typing import TYPE_CHECKING, Any, TextIO

from pythonjsonlogger.core import RESERVED_ATTRS
from pythonjsonlogger.json import JsonFormatter

from kubewire._cogs.helpers import typedefs

logger = logging.getLogger('kubewire.requests')

# The record's attribute with the request reference, as set by RequestLogger.
REQUEST_ATTR = 'k8s_request'

# A key for request references in JSON logs, as seen by the log parsers.
DEFAULT_JSON_REFKEY = 'request'

# The upper bounds of the levels, checked in this order; anything higher is fatal.
SEVERITIES: list[tuple[int, str]] = [
    (logging.DEBUG, 'debug'),
    (logging.INFO, 'info'),
    (logging.WARNING, 'warn'),
    (logging.ERROR, 'error'),
]


class LogFormat(enum.Enum):
    """ Log formats, as accepted by :func:`configure`. """
    PLAIN = '%(message)s'
    FULL = '[%(asctime)s] %(name)-20.20s [%(levelname)-8.8s] %(message)s'
    JSON = '-json-'


def get_severity(levelno: int) -> str:
    for bound, severity in SEVERITIES:
        if levelno <= bound:
            return severity
    return 'fatal'


class RequestFormatter(logging.Formatter):
    pass


class RequestTextFormatter(RequestFormatter, logging.Formatter):
    pass


class RequestJsonFormatter(RequestFormatter, JsonFormatter):
    """
    A JSON formatter with the request reference in a dedicated field.

    The raw attribute is excluded from the output, so the reference is
    rendered once, under the configured key (``request`` by default).
    """

    def __init__(
            self,
            *args: Any,
            refkey: str | None = None,
            **kwargs: Any,
    ) -> None:
        excluded = set(kwargs.pop('reserved_attrs', RESERVED_ATTRS)) | {REQUEST_ATTR}
        kwargs['reserved_attrs'] = excluded
        kwargs.setdefault('timestamp', True)
        super().__init__(*args, **kwargs)
        self._refkey: str = refkey or DEFAULT_JSON_REFKEY

    def add_fields(
            self,
            log_record: dict[str, Any],
            record: logging.LogRecord,
            message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        reference = getattr(record, REQUEST_ATTR, None)
        if reference is not None:
            log_record[self._refkey] = reference
        log_record.setdefault('severity', get_severity(record.levelno))


class RequestPrefixingMixin(RequestFormatter):
    def format(self, record: logging.LogRecord) -> str:
        reference = getattr(record, REQUEST_ATTR, None)
        if reference is not None:
            target = ' '.join(filter(None, [reference.get('method'), reference.get('url')]))
            record = copy.copy(record)  # other handlers must see the original message
            record.msg = f"[{target}] {record.msg}"
        return super().format(record)


class RequestPrefixingTextFormatter(RequestPrefixingMixin, RequestTextFormatter):
    pass


class RequestPrefixingJsonFormatter(RequestPrefixingMixin, RequestJsonFormatter):
    pass


class RequestLogger(typedefs.LoggerAdapter):
    """
    A logger/adapter to carry the request identifiers for formatting.

    Constructed for every watch-stream, so that all the messages of one stream
    can be told apart from the messages of other streams running in parallel.
    Only the method & URL are carried: never the headers, which can contain
    the credentials.
    """

    def __init__(self, *, method: str, url: str) -> None:
        reference = {'method': method.upper(), 'url': url}
        super().__init__(logger, {REQUEST_ATTR: reference})

    def process(
            self,
            msg: str,
            kwargs: MutableMapping[str, Any],
    ) -> tuple[str, MutableMapping[str, Any]]:
        # The stdlib adapter replaces the call's extras; here, both are kept.
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get('extra', {})}
        return msg, kwargs


# Marks the handlers added by configure(), so that a repeated call replaces them.
if TYPE_CHECKING:
    class _KubewireStreamHandler(logging.StreamHandler[TextIO]):
        pass
else:
    class _KubewireStreamHandler(logging.StreamHandler):
        pass


def configure(
        debug: bool | None = None,
        verbose: bool | None = None,
        quiet: bool | None = None,
        log_format: LogFormat | str = LogFormat.FULL,
        log_prefix: bool | None = False,
        log_refkey: str | None = None,
) -> None:
    if debug or verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    handler = _KubewireStreamHandler()
    handler.setFormatter(make_formatter(log_format=log_format,
                                        log_prefix=log_prefix,
                                        log_refkey=log_refkey))

    root = logging.getLogger()
    for old_handler in [h for h in root.handlers if isinstance(h, _KubewireStreamHandler)]:
        root.removeHandler(old_handler)
    root.addHandler(handler)
    root.setLevel(level)

    # The event loop's own messages are only shown in the debug mode.
    asyncio_logger = logging.getLogger('asyncio')
    asyncio_logger.propagate = bool(debug)
    if not debug:
        asyncio_logger.handlers[:] = [logging.NullHandler()]


def make_formatter(
        log_format: LogFormat | str = LogFormat.FULL,
        log_prefix: bool | None = False,
        log_refkey: str | None = None,
) -> RequestFormatter:
    """
    Build a formatter for a log format; the prefixes are on by default for texts only.
    """
    if log_prefix is None:
        log_prefix = log_format is not LogFormat.JSON

    if log_format is LogFormat.JSON:
        json_cls = RequestPrefixingJsonFormatter if log_prefix else RequestJsonFormatter
        return json_cls(refkey=log_refkey)

    if isinstance(log_format, LogFormat):
        fmt = log_format.value
    elif isinstance(log_format, str):
        fmt = log_format
    else:
        raise ValueError(f"Unsupported log format: {log_format!r}")

    text_cls = RequestPrefixingTextFormatter if log_prefix else RequestTextFormatter
    return text_cls(fmt)
