#!/usr/bin/env python3
"""
Price Provider
Fetches the dynamic hourly price forecast from the Tibber GraphQL API

Prices arrive in major currency units and are converted to hundredths (cents)
on ingestion, so nothing downstream branches on currency. The provider owns the
price cache; other components only see immutable snapshots of it.
"""

import asyncio
import logging
import statistics
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import aiohttp
import pytz

import json_utils
from autopilot_exceptions import AuthError, ConfigError, NetworkError, PersistenceError, ValidationError
from config_documents import (
    BOOLEAN, LIST, NUMBER, OPTIONAL_NUMBER, SCHEMA_VERSION, STRING,
    ConfigDocumentStore, check_schema_version, validate_fields,
)
from energy_models import MINOR_UNIT, PriceCache, PriceLevel, PricePoint, PriceSignal, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

TIBBER_API_URL = 'https://api.tibber.com/v1-beta/gql'
REQUEST_TIMEOUT_SECONDS = 15
DOCUMENT_NAME = 'price_config'

SUPPORTED_COUNTRIES = [
    {'code': 'NO', 'name': 'Norway', 'timezone': 'Europe/Oslo', 'currency': 'NOK', 'flag': '🇳🇴'},
    {'code': 'SE', 'name': 'Sweden', 'timezone': 'Europe/Stockholm', 'currency': 'EUR', 'flag': '🇸🇪'},
    {'code': 'DK', 'name': 'Denmark', 'timezone': 'Europe/Copenhagen', 'currency': 'DKK', 'flag': '🇩🇰'},
    {'code': 'FI', 'name': 'Finland', 'timezone': 'Europe/Helsinki', 'currency': 'EUR', 'flag': '🇫🇮'},
    {'code': 'DE', 'name': 'Germany', 'timezone': 'Europe/Berlin', 'currency': 'EUR', 'flag': '🇩🇪'},
    {'code': 'AT', 'name': 'Austria', 'timezone': 'Europe/Vienna', 'currency': 'EUR', 'flag': '🇦🇹'},
    {'code': 'CH', 'name': 'Switzerland', 'timezone': 'Europe/Zurich', 'currency': 'CHF', 'flag': '🇨🇭'},
    {'code': 'NL', 'name': 'Netherlands', 'timezone': 'Europe/Amsterdam', 'currency': 'EUR', 'flag': '🇳🇱'},
    {'code': 'BE', 'name': 'Belgium', 'timezone': 'Europe/Brussels', 'currency': 'EUR', 'flag': '🇧🇪'},
    {'code': 'FR', 'name': 'France', 'timezone': 'Europe/Paris', 'currency': 'EUR', 'flag': '🇫🇷'},
    {'code': 'LU', 'name': 'Luxembourg', 'timezone': 'Europe/Luxembourg', 'currency': 'EUR', 'flag': '🇱🇺'},
    {'code': 'GB', 'name': 'United Kingdom', 'timezone': 'Europe/London', 'currency': 'GBP', 'flag': '🇬🇧'},
    {'code': 'IE', 'name': 'Ireland', 'timezone': 'Europe/Dublin', 'currency': 'EUR', 'flag': '🇮🇪'},
    {'code': 'ES', 'name': 'Spain', 'timezone': 'Europe/Madrid', 'currency': 'EUR', 'flag': '🇪🇸'},
    {'code': 'IT', 'name': 'Italy', 'timezone': 'Europe/Rome', 'currency': 'EUR', 'flag': '🇮🇹'},
    {'code': 'PT', 'name': 'Portugal', 'timezone': 'Europe/Lisbon', 'currency': 'EUR', 'flag': '🇵🇹'},
    {'code': 'GR', 'name': 'Greece', 'timezone': 'Europe/Athens', 'currency': 'EUR', 'flag': '🇬🇷'},
    {'code': 'PL', 'name': 'Poland', 'timezone': 'Europe/Warsaw', 'currency': 'PLN', 'flag': '🇵🇱'},
    {'code': 'CZ', 'name': 'Czech Republic', 'timezone': 'Europe/Prague', 'currency': 'CZK', 'flag': '🇨🇿'},
    {'code': 'HU', 'name': 'Hungary', 'timezone': 'Europe/Budapest', 'currency': 'HUF', 'flag': '🇭🇺'},
    {'code': 'RO', 'name': 'Romania', 'timezone': 'Europe/Bucharest', 'currency': 'RON', 'flag': '🇷🇴'},
    {'code': 'EE', 'name': 'Estonia', 'timezone': 'Europe/Tallinn', 'currency': 'EUR', 'flag': '🇪🇪'},
    {'code': 'LV', 'name': 'Latvia', 'timezone': 'Europe/Riga', 'currency': 'EUR', 'flag': '🇱🇻'},
    {'code': 'LT', 'name': 'Lithuania', 'timezone': 'Europe/Vilnius', 'currency': 'EUR', 'flag': '🇱🇹'},
]
DEFAULT_COUNTRY = 'DE'

_PRICE_FIELDS = """
                current { total energy tax startsAt currency level }
                today { total energy tax startsAt level }
                tomorrow { total energy tax startsAt level }
"""

HOME_PRICE_QUERY = """
query GetPriceInfo($homeId: ID!) {
  viewer {
    home(id: $homeId) {
      currentSubscription {
        priceInfo {%s}
      }
    }
  }
}
""" % _PRICE_FIELDS

FIRST_HOME_PRICE_QUERY = """
query GetFirstHomePriceInfo {
  viewer {
    homes {
      id
      currentSubscription {
        priceInfo {%s}
      }
    }
  }
}
""" % _PRICE_FIELDS

VIEWER_QUERY = 'query { viewer { name } }'


def is_masked_key(value: Optional[str]) -> bool:
    """Empty or all-asterisk keys are placeholders sent back by a UI, never real keys"""
    return not value or set(value) == {'*'}


def mask_key(value: str) -> str:
    return '***' if value else ''


def get_supported_countries() -> List[Dict[str, str]]:
    return [dict(country) for country in SUPPORTED_COUNTRIES]


def get_country_settings(code: Optional[str]) -> Dict[str, str]:
    """Settings for a country code; empty or unknown codes fall back to Germany"""
    by_code = {c['code']: c for c in SUPPORTED_COUNTRIES}
    if not code:
        logger.info("No country code provided, using default (Germany)")
        return dict(by_code[DEFAULT_COUNTRY])
    country = by_code.get(code.upper())
    if country is None:
        logger.warning(f"⚠️  Country code '{code}' not found, using Germany")
        return dict(by_code[DEFAULT_COUNTRY])
    return dict(country)


PRICE_CONFIG_FIELDS = {
    'schema_version': (int,),
    'enabled': BOOLEAN,
    'api_key': STRING,
    'home_id': STRING,
    'country': STRING,
    'timezone': STRING,
    'currency': STRING,
    'target_soc': NUMBER,
    'minimum_soc': NUMBER,
    'use_price_levels': BOOLEAN,
    'allowed_price_levels': LIST,
    'max_price_threshold': OPTIONAL_NUMBER,
}


@dataclass
class PriceConfig:
    """User-owned price settings, persisted as one document"""
    enabled: bool = False
    api_key: str = ''
    home_id: str = ''
    country: str = DEFAULT_COUNTRY
    timezone: str = 'Europe/Berlin'
    currency: str = 'EUR'
    target_soc: float = 80
    minimum_soc: float = 20
    use_price_levels: bool = True
    allowed_price_levels: List[PriceLevel] = field(
        default_factory=lambda: [PriceLevel.VERY_CHEAP, PriceLevel.CHEAP, PriceLevel.NORMAL]
    )
    max_price_threshold: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schema_version': SCHEMA_VERSION,
            'enabled': self.enabled,
            'api_key': self.api_key,
            'home_id': self.home_id,
            'country': self.country,
            'timezone': self.timezone,
            'currency': self.currency,
            'target_soc': self.target_soc,
            'minimum_soc': self.minimum_soc,
            'use_price_levels': self.use_price_levels,
            'allowed_price_levels': [level.value for level in self.allowed_price_levels],
            'max_price_threshold': self.max_price_threshold,
        }

    def to_public_dict(self) -> Dict[str, Any]:
        data = self.to_dict()
        data['api_key'] = mask_key(self.api_key)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PriceConfig':
        """
        Build a config from a complete document, rejecting anything off-schema.

        Raises:
            ValidationError: unknown field, wrong type or out-of-range value
            ConfigError: unsupported schema version
        """
        validate_fields(data, PRICE_CONFIG_FIELDS, 'price_config')
        check_schema_version(data, 'price_config')

        defaults = cls()
        values = {name: data.get(name, getattr(defaults, name))
                  for name in PRICE_CONFIG_FIELDS if name != 'schema_version'}

        levels = []
        for raw in values['allowed_price_levels']:
            try:
                levels.append(PriceLevel(str(raw).upper()))
            except ValueError:
                raise ValidationError(f"Unknown price level: {raw!r}")
        values['allowed_price_levels'] = levels

        for name in ('target_soc', 'minimum_soc'):
            if not 0 <= values[name] <= 100:
                raise ValidationError(f"{name} must be between 0 and 100, got {values[name]}")
        if values['minimum_soc'] > values['target_soc']:
            raise ValidationError("minimum_soc must not exceed target_soc")

        try:
            pytz.timezone(values['timezone'])
        except pytz.UnknownTimeZoneError:
            raise ValidationError(f"Unknown timezone: {values['timezone']}")

        values['country'] = values['country'].upper()
        return cls(**values)


def default_price_document() -> Dict[str, Any]:
    return PriceConfig().to_dict()


def _convert_point(raw: Dict[str, Any]) -> PricePoint:
    """Major currency units -> hundredths"""
    return PricePoint(
        total=float(raw.get('total') or 0.0) * 100,
        energy=float(raw.get('energy') or 0.0) * 100,
        tax=float(raw.get('tax') or 0.0) * 100,
        level=PriceLevel.parse(raw.get('level')),
        starts_at=parse_timestamp(raw['startsAt']),
        currency=MINOR_UNIT,
    )


def _is_auth_failure(errors: List[Dict[str, Any]]) -> bool:
    for error in errors:
        code = str((error.get('extensions') or {}).get('code', '')).upper()
        message = str(error.get('message', '')).lower()
        if code in ('UNAUTHENTICATED', 'UNAUTHORIZED', 'FORBIDDEN') or 'unauthorized' in message:
            return True
    return False


class PriceProvider:
    """Fetches, converts and caches the price forecast; derives price signals"""

    def __init__(self, documents: ConfigDocumentStore, storage=None,
                 api_url: str = TIBBER_API_URL, timeout_seconds: float = REQUEST_TIMEOUT_SECONDS):
        """
        Args:
            documents: Store for the persisted price config document
            storage: Optional durable store (DataStorageInterface) for the cache
            api_url: GraphQL endpoint
            timeout_seconds: Total timeout for one API request
        """
        self.documents = documents
        self.storage = storage
        self.api_url = api_url
        self.timeout_seconds = timeout_seconds

        self.config = PriceConfig()
        self._cache = PriceCache()
        self.last_update: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self._auth_rejected = False
        self._refresh_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load the persisted config, then restore the cache from the durable store"""
        self.config = await self.documents.load(DOCUMENT_NAME, default_price_document, PriceConfig.from_dict)
        logger.info(f"Price provider config loaded (enabled: {self.config.enabled}, "
                    f"country: {self.config.country}, configured: {self.is_configured})")
        await self._restore_cache()

    async def _restore_cache(self) -> None:
        if self.storage is None:
            return
        try:
            data = await self.storage.load_price_cache()
        except PersistenceError as e:
            logger.warning(f"⚠️  Could not restore price cache from storage: {e}")
            return
        if not data:
            logger.info("No cached prices in storage")
            return
        try:
            self._cache = PriceCache.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"⚠️  Stored price cache is unreadable, ignoring it: {e}")
            return
        self.last_update = self._cache.timestamp
        logger.info(f"✅ Restored {len(self._cache.forecast)} cached price points")

    @property
    def is_configured(self) -> bool:
        return not is_masked_key(self.config.api_key) and not self._auth_rejected

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def refresh(self) -> bool:
        """
        Fetch current + today + tomorrow prices and rebuild the cache.

        A refresh already in flight is awaited instead of starting a second
        fetch. Never raises; on failure the previous cache is kept.

        Returns:
            True if the cache was rebuilt
        """
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._refresh_once())
            self._refresh_task = task
        else:
            logger.debug("Price refresh already in flight, awaiting it")
        return await asyncio.shield(task)

    async def _refresh_once(self) -> bool:
        try:
            cache = await self._fetch()
        except AuthError as e:
            self._auth_rejected = True
            self.last_error = str(e)
            logger.error(f"❌ Price API rejected the credentials, provider marked unconfigured: {e}")
            return False
        except (ConfigError, NetworkError) as e:
            self.last_error = str(e)
            logger.warning(f"⚠️  Price refresh failed, keeping previous cache: {e}")
            return False

        self._cache = cache
        self.last_update = cache.timestamp
        self.last_error = None
        current = cache.current_price
        if current is not None:
            logger.info(f"✅ Price: {current.total:.2f} {MINOR_UNIT} ({current.level.value}), "
                        f"{len(cache.forecast)} forecast points")
        await self._persist_cache(cache)
        return True

    async def _persist_cache(self, cache: PriceCache) -> None:
        if self.storage is None:
            return
        try:
            if not await self.storage.save_price_cache(cache.to_dict()):
                logger.warning("⚠️  Price cache was not saved to storage")
        except PersistenceError as e:
            logger.warning(f"⚠️  Price cache persistence failed, continuing in memory: {e}")

    async def _fetch(self) -> PriceCache:
        if not self.config.enabled:
            raise ConfigError("Price provider is disabled")
        if is_masked_key(self.config.api_key):
            raise ConfigError("No valid API key configured")
        if self._auth_rejected:
            raise ConfigError("API key was rejected; supply a new key")

        if self.config.home_id:
            logger.info(f"📊 Fetching price info for home: {self.config.home_id}")
            data = await self._post_graphql(HOME_PRICE_QUERY, {'homeId': self.config.home_id})
            home = (data.get('viewer') or {}).get('home')
            if not home:
                raise ConfigError(f"Home {self.config.home_id} not found in account")
        else:
            logger.info("📊 No home id configured, using first home of the account")
            data = await self._post_graphql(FIRST_HOME_PRICE_QUERY)
            homes = (data.get('viewer') or {}).get('homes') or []
            if not homes:
                raise ConfigError("No homes found in account")
            home = homes[0]

        try:
            price_info = home['currentSubscription']['priceInfo']
        except (KeyError, TypeError):
            raise NetworkError("Price API response has no price info")
        if not price_info:
            raise NetworkError("Price API response has no price info")

        try:
            current = _convert_point(price_info['current']) if price_info.get('current') else None
            points = [_convert_point(p) for p in (price_info.get('today') or [])]
            points += [_convert_point(p) for p in (price_info.get('tomorrow') or [])]
        except (KeyError, TypeError, ValueError) as e:
            raise NetworkError(f"Malformed price point in API response: {e}")

        return PriceCache(current_price=current, forecast=tuple(points), timestamp=utcnow())

    async def _post_graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        POST a GraphQL query and return its ``data`` member.

        Raises:
            AuthError: HTTP 401/403 or an authentication error in the payload
            NetworkError: transport failure, timeout or any other API error
        """
        headers = {
            'Authorization': f"Bearer {self.config.api_key}",
            'Content-Type': 'application/json',
        }
        payload = {'query': query, 'variables': variables or {}}
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.api_url, json=payload, headers=headers) as response:
                    if response.status in (401, 403):
                        raise AuthError(f"Price API returned HTTP {response.status}")
                    if response.status >= 400:
                        raise NetworkError(f"Price API returned HTTP {response.status}")
                    raw = await response.read()
        except asyncio.TimeoutError:
            raise NetworkError(f"Price API request timed out after {self.timeout_seconds}s")
        except aiohttp.ClientError as e:
            raise NetworkError(f"Price API request failed: {e}")

        try:
            body = json_utils.loads(raw)
        except json_utils.JSONDecodeError as e:
            raise NetworkError(f"Price API returned invalid JSON: {e}")
        if not isinstance(body, dict):
            raise NetworkError("Price API returned a non-object response")
        errors = body.get('errors')
        if errors:
            if _is_auth_failure(errors):
                raise AuthError(errors[0].get('message', 'authentication failed'))
            raise NetworkError(f"Price API error: {errors[0].get('message', errors[0])}")
        data = body.get('data')
        return data if isinstance(data, dict) else {}

    async def test_connection(self) -> Dict[str, Any]:
        """Check the API key with a ``viewer { name }`` query"""
        if is_masked_key(self.config.api_key):
            return {'success': False, 'error': 'No API key configured'}
        try:
            data = await self._post_graphql(VIEWER_QUERY)
        except AuthError as e:
            self._auth_rejected = True
            logger.error(f"❌ Connection test failed: {e}")
            return {'success': False, 'error': str(e)}
        except NetworkError as e:
            logger.error(f"❌ Connection test failed: {e}")
            return {'success': False, 'error': str(e)}
        viewer = data.get('viewer') or {}
        self._auth_rejected = False
        logger.info(f"✅ Connection successful! User: {viewer.get('name')}")
        return {'success': True, 'user': viewer}

    # ------------------------------------------------------------------
    # Derived signals
    # ------------------------------------------------------------------

    @property
    def cache(self) -> PriceCache:
        return self._cache

    def _future(self, now: Optional[datetime]) -> List[PricePoint]:
        now = now or utcnow()
        return [p for p in self._cache.forecast if p.starts_at > now]

    def average_price(self, hours: int = 24, now: Optional[datetime] = None) -> Optional[float]:
        """Mean total over the next ``hours`` forecast entries; None when there are none"""
        upcoming = self._future(now)[:hours]
        if not upcoming:
            return None
        return statistics.mean(p.total for p in upcoming)

    def cheapest_hours(self, count: int = 6, horizon_hours: int = 24,
                       now: Optional[datetime] = None) -> List[PricePoint]:
        """Cheapest future entries within the horizon, ties broken by earliest start"""
        now = now or utcnow()
        horizon_end = now + timedelta(hours=horizon_hours)
        window = [p for p in self._cache.forecast if now < p.starts_at <= horizon_end]
        window.sort(key=lambda p: (p.total, p.starts_at))
        return window[:max(count, 0)]

    def current_price(self, now: Optional[datetime] = None) -> Optional[PricePoint]:
        """Forecast entry covering ``now``, else the cached current price"""
        now = now or utcnow()
        covering = None
        for point in self._cache.forecast:
            if point.starts_at > now:
                break
            covering = point
        if covering is not None and now - covering.starts_at < timedelta(hours=1):
            return covering
        return self._cache.current_price

    def is_price_good(self, point: Optional[PricePoint] = None, now: Optional[datetime] = None) -> bool:
        price = point or self.current_price(now)
        if price is None:
            return False

        if self.config.use_price_levels:
            return price.level in self.config.allowed_price_levels

        average = self.average_price(now=now)
        if average is not None:
            return price.total < average

        if self.config.max_price_threshold is not None:
            return price.total <= self.config.max_price_threshold

        return False

    def price_signal(self, now: Optional[datetime] = None) -> PriceSignal:
        point = self.current_price(now)
        return PriceSignal(point=point, acceptable=self.is_price_good(point, now) if point else False)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def update_config(self, updates: Dict[str, Any]) -> PriceConfig:
        """
        Apply a validated partial update and persist the result.

        Raises:
            ValidationError: unknown field, wrong type or invalid value; nothing
                is applied or persisted
        """
        validate_fields(updates, PRICE_CONFIG_FIELDS, 'price_config')
        merged = self.config.to_dict()
        changes = dict(updates)
        changes.pop('schema_version', None)

        key_changed = False
        if 'api_key' in changes:
            if is_masked_key(changes['api_key']):
                logger.info("Masked or empty API key received, keeping existing key")
                changes.pop('api_key')
            else:
                key_changed = changes['api_key'] != self.config.api_key

        if changes.get('country') and 'currency' not in changes:
            country = get_country_settings(changes['country'])
            changes['currency'] = country['currency']
            changes.setdefault('timezone', country['timezone'])
            logger.info(f"✅ Auto-filled currency {country['currency']} for {country['code']}")

        merged.update(changes)
        new_config = PriceConfig.from_dict(merged)

        self.config = new_config
        if key_changed:
            self._auth_rejected = False
            self.last_error = None
        try:
            await self.documents.save(DOCUMENT_NAME, new_config.to_dict())
            logger.info("✅ Price config updated and saved")
        except PersistenceError as e:
            logger.error(f"❌ Price config applied but not saved: {e}")
        return new_config

    def get_supported_countries(self) -> List[Dict[str, str]]:
        return get_supported_countries()

    def get_country_settings(self, code: Optional[str]) -> Dict[str, str]:
        return get_country_settings(code)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def get_cached_data(self) -> Dict[str, Any]:
        data = self._cache.to_dict()
        data['config'] = {
            'enabled': self.config.enabled,
            'currency': self.config.currency,
            'timezone': self.config.timezone,
            'target_soc': self.config.target_soc,
            'minimum_soc': self.config.minimum_soc,
        }
        data['last_update'] = self.last_update.isoformat() if self.last_update else None
        return data

    def get_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        current = self._cache.current_price
        return {
            'enabled': self.config.enabled,
            'configured': self.is_configured,
            'last_update': self.last_update.isoformat() if self.last_update else None,
            'has_cached_data': current is not None and len(self._cache.forecast) > 0,
            'current_price': {
                'total': current.total,
                'level': current.level.value,
                'currency': current.currency,
            } if current else None,
            'price_is_good': self.is_price_good(now=now) if current else False,
            'forecast_hours': len(self._cache.forecast),
            'cache_age_seconds': int((now - self._cache.timestamp).total_seconds()) if self._cache.timestamp else None,
            'last_error': self.last_error,
        }
