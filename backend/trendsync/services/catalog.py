"""
catalog.py

Bundle of upstream clients passed explicitly into every sync operation.
"""
from dataclasses import dataclass, field

from trendsync.services.omdb_client import OMDbClient
from trendsync.services.tmdb_client import TMDBClient
from trendsync.services.trakt_client import TraktClient


@dataclass
class CatalogClients:
    trakt: TraktClient = field(default_factory=TraktClient)
    tmdb: TMDBClient = field(default_factory=TMDBClient)
    omdb: OMDbClient = field(default_factory=OMDbClient)


def build_clients() -> CatalogClients:
    """Clients configured from settings (one per scheduled run)."""
    return CatalogClients(trakt=TraktClient(), tmdb=TMDBClient(), omdb=OMDbClient())
