"""
schemas.py

Pydantic schemas for upstream payloads (Trakt, TMDB, OMDb) and queued task payloads.
Clients validate raw JSON into these models so downstream code works with typed fields.
"""
import re
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from typing import Optional, Dict, List, Literal, Union, Annotated


class UpstreamModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


# --- Trakt -------------------------------------------------------------------

class TraktIds(UpstreamModel):
    trakt: Optional[int] = None
    slug: Optional[str] = None
    tmdb: Optional[int] = None
    imdb: Optional[str] = None
    tvdb: Optional[int] = None

    @field_validator("slug", "imdb", mode="before")
    @classmethod
    def _blank_ids(cls, value):
        return _blank_to_none(value)


class TraktMedia(UpstreamModel):
    title: Optional[str] = None
    year: Optional[int] = None
    network: Optional[str] = None
    ids: TraktIds = Field(default_factory=TraktIds)

    @property
    def lookup_id(self) -> Optional[str]:
        """Identifier Trakt accepts in /shows/{id} style paths."""
        if self.ids.slug:
            return self.ids.slug
        if self.ids.trakt is not None:
            return str(self.ids.trakt)
        return None


def _lift_media(data):
    # Trakt nests the entity under "show" or "movie"
    if isinstance(data, dict) and "media" not in data:
        media = data.get("show") or data.get("movie")
        if media is not None:
            data = {**data, "media": media}
    return data


class TraktTrendingItem(UpstreamModel):
    watchers: int = 0
    media: TraktMedia

    @model_validator(mode="before")
    @classmethod
    def _lift(cls, data):
        return _lift_media(data)


class TraktWatchedItem(UpstreamModel):
    watcher_count: int = 0
    play_count: Optional[int] = None
    media: TraktMedia

    @model_validator(mode="before")
    @classmethod
    def _lift(cls, data):
        return _lift_media(data)


class TraktRatings(UpstreamModel):
    rating: Optional[float] = None
    votes: Optional[int] = None
    distribution: Dict[str, int] = Field(default_factory=dict)


class TraktEpisode(UpstreamModel):
    season: int
    number: int
    title: Optional[str] = None


class TraktCalendarEntry(UpstreamModel):
    first_aired: Optional[str] = None
    episode: TraktEpisode
    show: TraktMedia


# --- TMDB --------------------------------------------------------------------

class TMDBGenre(UpstreamModel):
    id: int
    name: Optional[str] = None


class TMDBSeason(UpstreamModel):
    season_number: int
    episode_count: Optional[int] = None
    air_date: Optional[str] = None


class TMDBEpisodeRef(UpstreamModel):
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    air_date: Optional[str] = None


class TMDBNetwork(UpstreamModel):
    id: Optional[int] = None
    name: Optional[str] = None


class TMDBDetails(UpstreamModel):
    id: int
    name: Optional[str] = None
    title: Optional[str] = None
    original_name: Optional[str] = None
    original_title: Optional[str] = None
    overview: Optional[str] = None
    tagline: Optional[str] = None
    poster_path: Optional[str] = None
    backdrop_path: Optional[str] = None
    vote_average: Optional[float] = None
    vote_count: Optional[int] = None
    popularity: Optional[float] = None
    original_language: Optional[str] = None
    status: Optional[str] = None
    genres: List[TMDBGenre] = Field(default_factory=list)
    networks: List[TMDBNetwork] = Field(default_factory=list)
    first_air_date: Optional[str] = None
    release_date: Optional[str] = None
    runtime: Optional[int] = None
    episode_run_time: List[int] = Field(default_factory=list)
    imdb_id: Optional[str] = None
    number_of_seasons: Optional[int] = None
    number_of_episodes: Optional[int] = None
    seasons: List[TMDBSeason] = Field(default_factory=list)
    last_episode_to_air: Optional[TMDBEpisodeRef] = None
    next_episode_to_air: Optional[TMDBEpisodeRef] = None

    @field_validator("overview", "tagline", "first_air_date", "release_date", "imdb_id", "status", mode="before")
    @classmethod
    def _blank_strings(cls, value):
        return _blank_to_none(value)

    @property
    def display_title(self) -> str:
        return self.name or self.title or self.original_name or self.original_title or ""

    @property
    def genre_ids(self) -> List[int]:
        return [g.id for g in self.genres]

    @property
    def latest_season(self) -> Optional[TMDBSeason]:
        """Highest-numbered regular season (specials, season 0, are ignored)."""
        regular = [s for s in self.seasons if s.season_number > 0]
        if not regular:
            return None
        return max(regular, key=lambda s: s.season_number)


class TMDBTranslation(UpstreamModel):
    title: Optional[str] = None
    overview: Optional[str] = None
    poster_path: Optional[str] = None

    @field_validator("title", "overview", "poster_path", mode="before")
    @classmethod
    def _blank_strings(cls, value):
        return _blank_to_none(value)


class TMDBVideo(UpstreamModel):
    site: str
    key: str
    name: Optional[str] = None
    type: Optional[str] = None
    iso_639_1: Optional[str] = None
    official: Optional[bool] = None
    published_at: Optional[str] = None


class TMDBCastMember(UpstreamModel):
    id: int
    name: str
    character: Optional[str] = None
    profile_path: Optional[str] = None
    order: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def _aggregate_roles(cls, data):
        # Aggregate credits carry roles[] instead of a single character
        if isinstance(data, dict) and not data.get("character") and data.get("roles"):
            roles = data.get("roles") or []
            first = roles[0] if roles and isinstance(roles[0], dict) else {}
            data = {**data, "character": first.get("character")}
        return data


class TMDBExternalIds(UpstreamModel):
    imdb_id: Optional[str] = None
    tvdb_id: Optional[int] = None

    @field_validator("imdb_id", mode="before")
    @classmethod
    def _blank_imdb(cls, value):
        return _blank_to_none(value)


class WatchProvider(UpstreamModel):
    """Provider offer flattened out of TMDB's per-region category lists."""
    region: str
    provider_id: int
    provider_name: Optional[str] = None
    logo_path: Optional[str] = None
    link: Optional[str] = None
    category: str
    rank: Optional[int] = None


class TMDBRecommendation(UpstreamModel):
    id: int
    genre_ids: Optional[List[int]] = None


# --- OMDb --------------------------------------------------------------------

def _parse_number(value) -> Optional[float]:
    if value is None:
        return None
    text = str(value).strip().replace(",", "")
    match = re.match(r"^(\d+(?:\.\d+)?)", text)
    if not match or text.upper().startswith("N/A"):
        return None
    return float(match.group(1))


class OMDbRatings(UpstreamModel):
    """Critic aggregate: IMDb rating/votes plus Metacritic and Rotten Tomatoes scores."""
    imdb_rating: Optional[float] = None
    imdb_votes: Optional[int] = None
    metacritic: Optional[int] = None
    rotten_tomatoes: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def _from_omdb(cls, data):
        if not isinstance(data, dict) or "imdbRating" not in data and "Ratings" not in data and "Metascore" not in data:
            return data
        out = {
            "imdb_rating": _parse_number(data.get("imdbRating")),
            "imdb_votes": _parse_number(data.get("imdbVotes")),
            "metacritic": _parse_number(data.get("Metascore")),
            "rotten_tomatoes": None,
        }
        for entry in data.get("Ratings") or []:
            if not isinstance(entry, dict):
                continue
            source = entry.get("Source")
            value = _parse_number(entry.get("Value"))
            if source == "Rotten Tomatoes":
                out["rotten_tomatoes"] = value
            elif source == "Metacritic" and out["metacritic"] is None:
                out["metacritic"] = value
        for key in ("imdb_votes", "metacritic", "rotten_tomatoes"):
            if out[key] is not None:
                out[key] = int(out[key])
        return out

    @property
    def is_empty(self) -> bool:
        return self.imdb_rating is None and self.imdb_votes is None and self.metacritic is None


# --- Task payloads -------------------------------------------------------------

class TrendingShowPayload(BaseModel):
    kind: Literal["trending-shows"] = "trending-shows"
    watchers: int = 0
    media: TraktMedia

    @property
    def media_type(self) -> str:
        return "show"


class TrendingMoviePayload(BaseModel):
    kind: Literal["trending-movies"] = "trending-movies"
    watchers: int = 0
    media: TraktMedia

    @property
    def media_type(self) -> str:
        return "movie"


TaskPayload = Annotated[Union[TrendingShowPayload, TrendingMoviePayload], Field(discriminator="kind")]
task_payload_adapter = TypeAdapter(TaskPayload)


def parse_task_payload(raw: str) -> Union[TrendingShowPayload, TrendingMoviePayload]:
    return task_payload_adapter.validate_json(raw)


def build_task_payload(media_type: str, item: TraktTrendingItem) -> Union[TrendingShowPayload, TrendingMoviePayload]:
    if media_type == "movie":
        return TrendingMoviePayload(watchers=item.watchers, media=item.media)
    return TrendingShowPayload(watchers=item.watchers, media=item.media)
