"""
The main kubewire module for all the exported functions & classes.
"""
# isort: skip_file

# Unlike all other places, where we import other modules and refer
# the functions via the modules, this is the library's top-level interface,
# as it is seen by the users. So, we export the individual functions.

from kubewire._cogs.clients.api import (
    Client,
)
from kubewire._cogs.clients.errors import (
    APIError,
    APIUnauthorizedError,
    APIForbiddenError,
    APINotFoundError,
    APIConflictError,
    TrustRejectedError,
    TransientTransportError,
    WatchDecodeError,
    WatchTruncatedError,
)
from kubewire._cogs.clients.handlers import (
    Handler,
    HandlerChain,
    NextHandler,
    Request,
    TransportHandler,
)
from kubewire._cogs.clients.trust import (
    PolicyErrors,
    TrustDecision,
    TrustEvaluator,
)
from kubewire._cogs.clients.watching import (
    WatchEvent,
    WatchEventType,
    WatchHandler,
    WatchStream,
)
from kubewire._cogs.configs.configuration import (
    ClientSettings,
    NetworkingSettings,
    WatchingSettings,
)
from kubewire._cogs.helpers.loggers import (
    LogFormat,
    configure,
)
from kubewire._cogs.helpers.typedefs import (
    Logger,
)
from kubewire._cogs.helpers.versions import (
    version as __version__,
)
from kubewire._cogs.structs.credentials import (
    ConfigurationError,
    ClientConfiguration,
    CredentialStrategy,
    TokenCredentials,
    BasicCredentials,
    NoCredentials,
    validate_configuration,
    select_credentials,
)

__all__ = [
    'Client',
    'APIError',
    'APIUnauthorizedError',
    'APIForbiddenError',
    'APINotFoundError',
    'APIConflictError',
    'TrustRejectedError',
    'TransientTransportError',
    'WatchDecodeError',
    'WatchTruncatedError',
    'Handler',
    'HandlerChain',
    'NextHandler',
    'Request',
    'TransportHandler',
    'PolicyErrors',
    'TrustDecision',
    'TrustEvaluator',
    'WatchEvent',
    'WatchEventType',
    'WatchHandler',
    'WatchStream',
    'ClientSettings',
    'NetworkingSettings',
    'WatchingSettings',
    'LogFormat',
    'configure',
    'Logger',
    'ConfigurationError',
    'ClientConfiguration',
    'CredentialStrategy',
    'TokenCredentials',
    'BasicCredentials',
    'NoCredentials',
    'validate_configuration',
    'select_credentials',
]
