"""
subsynth - pluggable subdomain discovery services with an online Markov name model
"""

__version__ = "2.0"
__author__ = "Security Team"

from .core.eventbus import EventBus
from .core.service import BaseService, ServiceConfigurationError
from .services.markov import MarkovService
from .services.urlscan import URLScanService
from .util.config import Config, ConfigurationError, load_config
from .util.types import Request, Tag, Priority, ServiceState

__all__ = [
    'EventBus',
    'BaseService',
    'ServiceConfigurationError',
    'MarkovService',
    'URLScanService',
    'Config',
    'ConfigurationError',
    'load_config',
    'Request',
    'Tag',
    'Priority',
    'ServiceState',
]
