"""Inventory fetchers: paginated DescribeInstances calls with retry and exponential backoff."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import boto3
import requests
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.config import Config
from botocore.credentials import Credentials
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from ..config import TAG_WILDCARD, DiscoveryFilterConfig, EC2Config, RetryConfig
from ..exceptions import (
    ConfigError,
    FetchExhausted,
    FetchRejected,
    MalformedResponse,
    RefreshCancelled,
    TransientFetchError,
    UnsupportedAction,
)
from .models import InstanceState, RawPage
from .parser import SdkResponseFormat, XmlResponseFormat, response_format_for

logger = logging.getLogger(__name__)

DESCRIBE_INSTANCES = "DescribeInstances"
SUPPORTED_ACTIONS = frozenset({DESCRIBE_INSTANCES})

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded; charset=utf-8"

THROTTLING_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "RequestThrottledException",
})


@dataclass(frozen=True)
class InventoryQuery:
    """An inventory API call: action name plus server-side filters."""

    action: str = DESCRIBE_INSTANCES
    filters: tuple[tuple[str, tuple[str, ...]], ...] = ()
    page_size: int | None = None

    @classmethod
    def describe_instances(
        cls,
        filter_config: DiscoveryFilterConfig | None = None,
        page_size: int | None = None,
    ) -> InventoryQuery:
        """Build a DescribeInstances query, pushing down the filters EC2 can evaluate itself."""
        filters: list[tuple[str, tuple[str, ...]]] = []
        if filter_config is not None:
            if filter_config.required_state is not InstanceState.UNKNOWN:
                filters.append(("instance-state-name", (filter_config.required_state.value,)))
            for key, value in sorted(filter_config.tag_filters.items()):
                values = [value] if isinstance(value, str) else list(value)
                if TAG_WILDCARD in values:
                    filters.append(("tag-key", (key,)))
                else:
                    filters.append((f"tag:{key}", tuple(values)))
            if filter_config.availability_zones:
                filters.append(("availability-zone", tuple(sorted(filter_config.availability_zones))))
        return cls(action=DESCRIBE_INSTANCES, filters=tuple(filters), page_size=page_size)

    def to_form(self, api_version: str, next_token: str | None = None) -> dict[str, str]:
        """Query API parameters: Action, Version, Filter.N.Name / Filter.N.Value.M, paging."""
        params = {"Action": self.action, "Version": api_version}
        for n, (name, values) in enumerate(self.filters, start=1):
            params[f"Filter.{n}.Name"] = name
            for m, value in enumerate(values, start=1):
                params[f"Filter.{n}.Value.{m}"] = value
        if self.page_size is not None:
            params["MaxResults"] = str(self.page_size)
        if next_token:
            params["NextToken"] = next_token
        return params

    def to_sdk_kwargs(self, next_token: str | None = None) -> dict[str, Any]:
        """Keyword arguments for boto3's describe_instances."""
        kwargs: dict[str, Any] = {}
        if self.filters:
            kwargs["Filters"] = [{"Name": name, "Values": list(values)} for name, values in self.filters]
        if self.page_size is not None:
            kwargs["MaxResults"] = self.page_size
        if next_token:
            kwargs["NextToken"] = next_token
        return kwargs


class BaseFetcher:
    """Retry, backoff and pagination shared by every wire implementation.

    Subclasses implement ``_request`` and raise TransientFetchError for failures worth
    retrying and FetchRejected for the ones that are not.
    """

    def __init__(
        self,
        retry_config: RetryConfig,
        response_format: Any,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._retry = retry_config
        self.response_format = response_format
        self._sleep = sleep

    def fetch(
        self,
        query: InventoryQuery,
        next_token: str | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> RawPage:
        """Fetch and decode one page, retrying transient failures.

        ``should_stop`` is polled before every attempt; once it returns True the
        remaining attempts are skipped and RefreshCancelled is raised.
        """
        if query.action not in SUPPORTED_ACTIONS:
            raise UnsupportedAction(f"Unsupported inventory action: {query.action!r}")

        max_attempts = self._retry.max_attempts
        last_error: BaseException | None = None
        for attempt in range(1, max_attempts + 1):
            if should_stop is not None and should_stop():
                raise RefreshCancelled(f"Inventory fetch called off before attempt {attempt}")
            try:
                body = self._request(query, next_token)
            except TransientFetchError as exc:
                last_error = exc.__cause__ or exc
                if attempt == max_attempts:
                    break
                delay = self._backoff(attempt)
                logger.warning(
                    "Inventory request failed (attempt %d/%d), retrying in %.2fs: %s",
                    attempt, max_attempts, delay, exc,
                    extra={"attempt": attempt},
                )
                self._sleep(delay)
                continue

            page = self.response_format.read_page(body)
            logger.debug("Fetched inventory page", extra={"attempt": attempt, "request_id": page.request_id})
            return page

        raise FetchExhausted(
            f"Inventory request failed after {max_attempts} attempts: {last_error}",
            attempts=max_attempts,
            last_error=last_error,
        ) from last_error

    def fetch_all(
        self, query: InventoryQuery, should_stop: Callable[[], bool] | None = None,
    ) -> Iterator[RawPage]:
        """Yield every page in order, following continuation tokens until none remains."""
        seen_tokens: set[str] = set()
        next_token: str | None = None
        while True:
            page = self.fetch(query, next_token, should_stop)
            yield page
            next_token = page.next_token
            if not next_token:
                return
            if next_token in seen_tokens:
                raise MalformedResponse(f"Pagination token repeated: {next_token!r}")
            seen_tokens.add(next_token)

    def _backoff(self, attempt: int) -> float:
        return min(
            self._retry.backoff_base_seconds * (2 ** (attempt - 1)),
            self._retry.max_backoff_seconds,
        )

    def _request(self, query: InventoryQuery, next_token: str | None) -> Any:
        raise NotImplementedError


class QueryApiFetcher(BaseFetcher):
    """POSTs form-encoded queries to the EC2 query API and reads the XML response."""

    def __init__(
        self,
        ec2_config: EC2Config,
        retry_config: RetryConfig,
        response_format: XmlResponseFormat | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(retry_config, response_format or XmlResponseFormat(), sleep)
        self._endpoint = ec2_config.query_endpoint
        self._api_version = ec2_config.api_version
        self._timeout = ec2_config.timeout_seconds
        self._session = session or requests.Session()
        self._session.verify = ec2_config.verify_ssl
        self._signer = self._build_signer(ec2_config)

    @staticmethod
    def _build_signer(config: EC2Config) -> SigV4Auth | None:
        """SigV4 signer when credentials are configured; None sends unsigned requests."""
        if config.access_key:
            credentials = Credentials(config.access_key, config.secret_key, config.session_token or None)
        elif config.credential_profile:
            credentials = boto3.Session(profile_name=config.credential_profile).get_credentials()
            if credentials is None:
                raise ConfigError(f"No credentials found for profile '{config.credential_profile}'")
        else:
            return None
        return SigV4Auth(credentials, "ec2", config.region or "us-east-1")

    def _request(self, query: InventoryQuery, next_token: str | None) -> bytes:
        body = urlencode(query.to_form(self._api_version, next_token)).encode("utf-8")
        headers = {"Content-Type": FORM_CONTENT_TYPE}
        if self._signer is not None:
            aws_request = AWSRequest(method="POST", url=self._endpoint, data=body, headers=headers)
            self._signer.add_auth(aws_request)
            headers = dict(aws_request.headers.items())

        logger.debug("POST %s Action=%s NextToken=%s", self._endpoint, query.action, next_token)
        try:
            resp = self._session.post(self._endpoint, data=body, headers=headers, timeout=self._timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientFetchError(f"Request failed: {exc}") from exc
        except requests.RequestException as exc:
            raise FetchRejected(f"Request failed: {exc}") from exc

        if resp.status_code >= 500:
            raise TransientFetchError(
                f"HTTP {resp.status_code} from {self._endpoint}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            raise FetchRejected(
                f"HTTP {resp.status_code} from {self._endpoint}: {resp.text[:200]}",
                status_code=resp.status_code,
                response_body=resp.text,
            )
        return resp.content


class SdkFetcher(BaseFetcher):
    """Calls describe_instances through a boto3 EC2 client with SDK retries switched off."""

    def __init__(
        self,
        ec2_config: EC2Config,
        retry_config: RetryConfig,
        response_format: SdkResponseFormat | None = None,
        client: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(retry_config, response_format or SdkResponseFormat(), sleep)
        self._ec2 = client if client is not None else self._build_client(ec2_config)

    @staticmethod
    def _build_client(config: EC2Config) -> Any:
        session_kwargs: dict[str, Any] = {}
        if config.region:
            session_kwargs["region_name"] = config.region
        if config.credential_profile:
            session_kwargs["profile_name"] = config.credential_profile
        if config.access_key:
            session_kwargs["aws_access_key_id"] = config.access_key
            session_kwargs["aws_secret_access_key"] = config.secret_key
            if config.session_token:
                session_kwargs["aws_session_token"] = config.session_token

        client_kwargs: dict[str, Any] = {
            # Backoff is ours; a single SDK attempt per request keeps the attempt count honest
            "config": Config(
                retries={"total_max_attempts": 1, "mode": "standard"},
                connect_timeout=config.timeout_seconds,
                read_timeout=config.timeout_seconds,
            ),
        }
        if config.endpoint:
            client_kwargs["endpoint_url"] = config.endpoint
        if not config.verify_ssl:
            client_kwargs["verify"] = False

        session = boto3.Session(**session_kwargs)
        return session.client("ec2", **client_kwargs)

    def _request(self, query: InventoryQuery, next_token: str | None) -> dict[str, Any]:
        try:
            return self._ec2.describe_instances(**query.to_sdk_kwargs(next_token))
        except ClientError as exc:
            error = exc.response.get("Error", {})
            code = error.get("Code", "Unknown")
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
            if status >= 500 or code in THROTTLING_CODES:
                raise TransientFetchError(f"{code}: {error.get('Message', exc)}", status_code=status) from exc
            raise FetchRejected(
                f"{code}: {error.get('Message', exc)}",
                status_code=status or None,
                response_body=str(exc.response),
            ) from exc
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError) as exc:
            raise TransientFetchError(f"Request failed: {exc}") from exc


def build_fetcher(ec2_config: EC2Config, retry_config: RetryConfig) -> BaseFetcher:
    """Instantiate the fetcher for the configured wire format."""
    response_format = response_format_for(ec2_config.wire_format)
    if isinstance(response_format, XmlResponseFormat):
        return QueryApiFetcher(ec2_config, retry_config, response_format)
    return SdkFetcher(ec2_config, retry_config, response_format)
