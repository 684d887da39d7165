"""CJ Dropshipping API client.

Each ``CjClient`` owns its bearer-token state and its request throttle, so two
instances (or two tests) never share either. Tokens are also written to the
``integration_tokens`` table so a restarted process can reuse them instead of
re-authenticating; CJ only allows one authentication call every few minutes.
"""
from __future__ import annotations

import http.client
import json
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

import structlog
from sqlalchemy.exc import SQLAlchemyError

from storefront.models import IntegrationToken

log = structlog.get_logger(__name__)

PROVIDER = 'cj'
DEFAULT_BASE_URL = 'https://developers.cjdropshipping.com/api2.0/v1'
EXPIRY_SKEW = timedelta(minutes=1)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _parse_expiry(raw, fallback: datetime) -> datetime:
    if isinstance(raw, str) and raw.strip():
        try:
            return _as_utc(datetime.fromisoformat(raw.strip().replace('Z', '+00:00')))
        except ValueError:
            pass
    return fallback


class CjApiError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class CjAuthError(CjApiError):
    pass


class RequestThrottle:
    """Keeps at least ``min_interval`` seconds between consecutive calls.

    The last-call timestamp lives in process memory, so the guarantee only
    holds within one process.
    """

    def __init__(self, min_interval: float = 1.1, *, clock=time.monotonic, sleep=time.sleep) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = threading.Lock()

    def wait(self) -> float:
        with self._lock:
            now = self._clock()
            delay = 0.0
            if self._last is not None:
                delay = max(0.0, self.min_interval - (now - self._last))
            # Reserve the slot before sleeping so concurrent callers queue behind it.
            self._last = now + delay
        if delay > 0:
            self._sleep(delay)
        return delay

    def throttle(self, fn, *args, **kwargs):
        self.wait()
        return fn(*args, **kwargs)


@dataclass
class TokenState:
    access_token: str
    access_expiry: datetime
    refresh_token: str | None = None
    refresh_expiry: datetime | None = None

    def access_valid(self, now: datetime) -> bool:
        return bool(self.access_token) and now < self.access_expiry - EXPIRY_SKEW

    def refresh_valid(self, now: datetime) -> bool:
        if not self.refresh_token:
            return False
        return self.refresh_expiry is None or now < self.refresh_expiry - EXPIRY_SKEW


class TokenStore:
    """Best-effort persistence of the provider token row."""

    def __init__(self, session_factory, provider: str = PROVIDER) -> None:
        self.session_factory = session_factory
        self.provider = provider

    def load(self) -> TokenState | None:
        try:
            with self.session_factory() as db:
                row = db.get(IntegrationToken, self.provider)
                if row is None or not row.access_token or row.access_expiry is None:
                    return None
                return TokenState(
                    access_token=row.access_token,
                    access_expiry=_as_utc(row.access_expiry),
                    refresh_token=row.refresh_token,
                    refresh_expiry=_as_utc(row.refresh_expiry),
                )
        except SQLAlchemyError as exc:
            log.warning('cj.token_store.load_failed', error=str(exc))
            return None

    def save(self, state: TokenState) -> None:
        try:
            with self.session_factory() as db:
                row = db.get(IntegrationToken, self.provider)
                if row is None:
                    row = IntegrationToken(provider=self.provider)
                    db.add(row)
                row.access_token = state.access_token
                row.access_expiry = state.access_expiry
                row.refresh_token = state.refresh_token
                row.refresh_expiry = state.refresh_expiry
                row.last_auth_call_at = _now()
                row.updated_at = _now()
                db.commit()
        except SQLAlchemyError as exc:
            log.warning('cj.token_store.save_failed', error=str(exc))

    def clear(self) -> None:
        try:
            with self.session_factory() as db:
                row = db.get(IntegrationToken, self.provider)
                if row is not None:
                    db.delete(row)
                    db.commit()
        except SQLAlchemyError as exc:
            log.warning('cj.token_store.clear_failed', error=str(exc))


@dataclass(frozen=True)
class FreightQuoteRequest:
    country_code: str
    zip_code: str | None = None
    quantity: int = 1
    pid: str | None = None
    sku: str | None = None
    variant_id: str | None = None
    weight_gram: float | None = None
    from_country_code: str = 'CN'


class CjClient:
    def __init__(
        self,
        *,
        email: str | None = None,
        api_key: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: int = 30,
        access_token: str | None = None,
        token_store: TokenStore | None = None,
        throttle: RequestThrottle | None = None,
        token_ttl: timedelta = timedelta(days=14),
        clock=_now,
    ) -> None:
        self.email = (email or '').strip()
        self.api_key = (api_key or '').strip()
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip('/')
        self.timeout_seconds = timeout_seconds
        self.static_token = (access_token or '').strip() or None
        self.token_store = token_store
        self.throttle = throttle or RequestThrottle()
        self.token_ttl = token_ttl
        self._clock = clock
        self._token: TokenState | None = None
        self._token_lock = threading.Lock()

    def is_configured(self) -> bool:
        return bool(self.static_token or (self.email and self.api_key))

    # -- transport -----------------------------------------------------------

    def _url(self, path: str, query: dict | None = None) -> str:
        url = f"{self.base_url}/{path.lstrip('/')}"
        if query:
            clean = {k: v for k, v in query.items() if v is not None}
            if clean:
                url = f'{url}?{urlencode(clean)}'
        return url

    def _send(self, method: str, url: str, headers: dict, payload: dict | None) -> dict:
        data = json.dumps(payload).encode('utf-8') if payload is not None and method != 'GET' else None
        req = Request(url=url, data=data, headers=headers, method=method)
        try:
            with urlopen(req, timeout=self.timeout_seconds) as response:
                raw = response.read().decode('utf-8')
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise CjApiError(f'CJ API error {exc.code}: {body}', status=exc.code) from exc
        except URLError as exc:
            raise CjApiError(f'CJ API network error: {exc.reason}') from exc
        except (TimeoutError, OSError, http.client.HTTPException) as exc:
            raise CjApiError(f'CJ API network error: {exc!r}') from exc

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CjApiError(f'CJ API returned malformed JSON: {raw[:200]}') from exc
        if not isinstance(parsed, dict):
            raise CjApiError('CJ API returned an unexpected payload')
        return parsed

    # -- tokens --------------------------------------------------------------

    def get_access_token(self) -> str:
        if self.static_token:
            return self.static_token

        with self._token_lock:
            now = self._clock()
            if self._token and self._token.access_valid(now):
                return self._token.access_token

            stored = self.token_store.load() if self.token_store else None
            if stored and stored.access_valid(now):
                self._token = stored
                return stored.access_token

            refresh_source = self._token or stored
            if refresh_source and refresh_source.refresh_valid(now):
                try:
                    state = self._refresh(refresh_source)
                except CjApiError as exc:
                    log.warning('cj.token.refresh_failed', error=str(exc))
                else:
                    self._remember(state)
                    return state.access_token

            state = self._authenticate()
            self._remember(state)
            return state.access_token

    def clear_token(self) -> None:
        with self._token_lock:
            self._token = None
            if self.token_store:
                self.token_store.clear()

    def _remember(self, state: TokenState) -> None:
        self._token = state
        if self.token_store:
            self.token_store.save(state)

    def _token_from_response(self, parsed: dict, *, previous_refresh: str | None = None) -> TokenState | None:
        data = parsed.get('data') or {}
        token = data.get('accessToken') if isinstance(data, dict) else None
        if not token:
            return None
        now = self._clock()
        return TokenState(
            access_token=token,
            access_expiry=_parse_expiry(data.get('accessTokenExpiryDate'), now + self.token_ttl),
            refresh_token=data.get('refreshToken') or previous_refresh,
            refresh_expiry=_parse_expiry(data.get('refreshTokenExpiryDate'), now + self.token_ttl * 12),
        )

    def _refresh(self, previous: TokenState) -> TokenState:
        parsed = self.throttle.throttle(
            self._send,
            'POST',
            self._url('/authentication/refreshAccessToken'),
            {'Content-Type': 'application/json'},
            {'refreshToken': previous.refresh_token},
        )
        state = self._token_from_response(parsed, previous_refresh=previous.refresh_token)
        if state is None:
            raise CjApiError(f"CJ token refresh returned no token: {parsed.get('message')}")
        log.info('cj.token.refreshed', provider=PROVIDER)
        return state

    def _authenticate(self) -> TokenState:
        if not (self.email and self.api_key):
            raise CjAuthError('failed to authenticate with CJ: credentials are not configured')
        try:
            parsed = self.throttle.throttle(
                self._send,
                'POST',
                self._url('/authentication/getAccessToken'),
                {'Content-Type': 'application/json'},
                {'email': self.email, 'apiKey': self.api_key},
            )
        except CjApiError as exc:
            raise CjAuthError(f'failed to authenticate with CJ: {exc}', status=exc.status) from exc

        state = self._token_from_response(parsed)
        if state is None:
            raise CjAuthError(f"failed to authenticate with CJ: {parsed.get('message') or 'no access token returned'}")
        log.info('cj.token.obtained', provider=PROVIDER)
        return state

    # -- requests ------------------------------------------------------------

    def request(self, path: str, method: str = 'GET', payload: dict | None = None, query: dict | None = None) -> dict:
        if not self.is_configured():
            raise CjApiError('CJ API not configured')
        headers = {
            'Content-Type': 'application/json',
            'CJ-Access-Token': self.get_access_token(),
        }
        log.debug('cj.request', method=method, path=path)
        try:
            parsed = self.throttle.throttle(self._send, method, self._url(path, query), headers, payload)
        except CjApiError as exc:
            if exc.status == 401 and not self.static_token:
                self.clear_token()
            raise
        if parsed.get('result') is False:
            raise CjApiError(f"CJ API returned an error on {path}: {parsed.get('message')}", status=parsed.get('code'))
        return parsed

    def list_products_page(self, *, keyword: str | None, page_num: int = 1, page_size: int = 20) -> list[dict]:
        parsed = self.request(
            '/product/list',
            query={'productNameEn': keyword or None, 'pageNum': page_num, 'pageSize': page_size},
        )
        data = parsed.get('data') or {}
        items = data.get('list') if isinstance(data, dict) else None
        return items if isinstance(items, list) else []

    def query_product(self, pid: str) -> dict | None:
        parsed = self.request('/product/query', query={'pid': pid})
        data = parsed.get('data')
        if isinstance(data, dict) and isinstance(data.get('content'), list):
            data = data['content'][0] if data['content'] else None
        return data if isinstance(data, dict) else None

    def list_variants(self, pid: str) -> list[dict]:
        parsed = self.request('/product/variant/query', query={'pid': pid})
        data = parsed.get('data')
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            for key in ('list', 'records'):
                if isinstance(data.get(key), list):
                    return data[key]
            if data.get('vid') or data.get('variantId'):
                return [data]
        return []

    def create_order(self, payload: dict) -> dict:
        return self.request('/shopping/order/createOrderV2', 'POST', payload)

    def get_order_detail(self, order_no: str) -> dict:
        return self.request('/shopping/order/getOrderDetail', query={'orderId': order_no})

    def get_tracking_info(self, order_no: str) -> dict:
        return self.request('/shopping/order/getTrackInfo', 'POST', {'orderId': order_no})

    def freight_calculate(self, req: FreightQuoteRequest) -> list[dict]:
        product: dict = {'quantity': max(1, req.quantity)}
        if req.variant_id:
            product['vid'] = req.variant_id
        if req.sku:
            product['sku'] = req.sku
        if req.pid:
            product['pid'] = req.pid
        if req.weight_gram:
            product['weight'] = req.weight_gram
        payload = {
            'startCountryCode': req.from_country_code,
            'endCountryCode': req.country_code,
            'zip': req.zip_code,
            'products': [product],
        }
        parsed = self.request('/logistic/freightCalculate', 'POST', payload)
        options = []
        for opt in parsed.get('data') or []:
            if not isinstance(opt, dict):
                continue
            try:
                price = float(opt.get('logisticPrice') or opt.get('price') or 0)
            except (TypeError, ValueError):
                continue
            options.append(
                {
                    'name': opt.get('logisticName') or opt.get('name'),
                    'price': price,
                    'currency': opt.get('currency') or 'USD',
                    'aging': opt.get('logisticAging') or opt.get('aging'),
                }
            )
        options.sort(key=lambda o: o['price'])
        return options
