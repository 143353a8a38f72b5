"""
Ember - Terminal front-end for Emby media servers.
"""

__version__ = "1.0.0"
__author__ = "Ember Team"
__description__ = "A terminal browser for Emby libraries that plays through mpv."

from . import models
from . import config
from . import storage
from . import client
from . import cache
from . import navigation
from . import player
from . import probe
from . import events
from . import state
from . import session

from .models import MediaItem, ItemType, ServerProfile, MediaDetail
from .config import AppConfig, ConfigManager, load_config
from .storage import Store
from .client import CatalogClient
from .cache import ItemArena, SectionCache, DetailCache, CoverCache
from .navigation import NavigationStack, NavState
from .player import MPVPlayer, PlayResult
from .probe import probe_group, UNREACHABLE
from .session import Session

__all__ = [
    # Models
    'MediaItem',
    'ItemType',
    'ServerProfile',
    'MediaDetail',

    # Config and storage
    'AppConfig',
    'ConfigManager',
    'load_config',
    'Store',

    # Catalog
    'CatalogClient',

    # Caches and navigation
    'ItemArena',
    'SectionCache',
    'DetailCache',
    'CoverCache',
    'NavigationStack',
    'NavState',

    # Playback and probing
    'MPVPlayer',
    'PlayResult',
    'probe_group',
    'UNREACHABLE',

    # Session
    'Session',
]
