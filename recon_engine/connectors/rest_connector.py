"""
REST Connector for the Reconciliation Engine.

Talks to a JSON identity API over HTTP using a requests Session. Expected
endpoints, relative to ``base_url``:

    GET    /health
    GET    /schema
    GET    /{object_class}?pageSize=&cookie=
    POST   /{object_class}
    PUT    /{object_class}/{uid}
    DELETE /{object_class}/{uid}
    GET    /{object_class}/sync?token=
    GET    /{object_class}/sync/latest
    POST   /{object_class}/authenticate
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from ..exceptions import ConfigurationError, ConnectorError, ConnectorErrorCategory
from ..models import (
    NAME_ATTR,
    PASSWORD_ATTR,
    UID_ATTR,
    ConnectorObject,
    ExternalResource,
    SyncDelta,
)
from ..search.cond import SearchCond
from ..search.matcher import filter_matching
from .base_connector import (
    AttributeInfo,
    Connector,
    ObjectClassInfo,
    OperationOptions,
    SyncResultsHandler,
)

logger = logging.getLogger(__name__)


class RestConnector(Connector):
    """
    Connector for a generic JSON identity API.

    ``connector_config`` keys: base_url (required), token, username, password,
    timeout (seconds, default 30), verify_ssl (default True).
    """

    def __init__(self, resource: ExternalResource, session: Optional[requests.Session] = None):
        super().__init__(resource)
        self._do_validate()
        self.base_url = self.config["base_url"].rstrip("/")
        self.timeout = float(self.config.get("timeout", 30))
        self.session = session or requests.Session()
        self.session.verify = self.config.get("verify_ssl", True)
        self.session.headers.update({"Accept": "application/json"})

        if self.config.get("token"):
            self.session.headers["Authorization"] = f"Bearer {self.config['token']}"
        elif self.config.get("username"):
            self.session.auth = (self.config["username"], self.config.get("password", ""))

    def _do_validate(self) -> None:
        if not self.config.get("base_url"):
            raise ConfigurationError(f"Resource {self.resource_key}: base_url is required")

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise ConnectorError(ConnectorErrorCategory.TIMEOUT, f"{method} {url} timed out",
                                 self.resource_key) from e
        except requests.exceptions.ConnectionError as e:
            raise ConnectorError(ConnectorErrorCategory.CONNECT, f"Cannot reach {url}: {e}",
                                 self.resource_key) from e

        if response.status_code in (401, 403):
            category = ConnectorErrorCategory.AUTH
        elif response.status_code == 404:
            category = ConnectorErrorCategory.NOT_FOUND
        elif response.status_code == 409:
            category = ConnectorErrorCategory.ALREADY_EXISTS
        elif response.status_code >= 400:
            category = ConnectorErrorCategory.UNKNOWN
        else:
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

        raise ConnectorError(category, f"{method} {url} returned {response.status_code}",
                             self.resource_key)

    @staticmethod
    def _payload(attributes: Dict[str, List[Any]]) -> Dict[str, Any]:
        attrs = dict(attributes)
        payload: Dict[str, Any] = {}
        names = attrs.pop(NAME_ATTR, None)
        if names:
            payload["name"] = names[0]
        passwords = attrs.pop(PASSWORD_ATTR, None)
        if passwords:
            password = passwords[0]
            payload["password"] = password.get_secret_value() if hasattr(password, "get_secret_value") else password
        attrs.pop(UID_ATTR, None)
        payload["attributes"] = attrs
        return payload

    @staticmethod
    def _to_object(object_class: str, data: Dict[str, Any]) -> ConnectorObject:
        return ConnectorObject(
            object_class=object_class,
            uid=str(data["uid"]),
            name=data.get("name"),
            attributes={k: v if isinstance(v, list) else [v] for k, v in data.get("attributes", {}).items()},
        )

    def _do_authenticate(self, object_class, username, password, options) -> str:
        data = self._request("POST", f"{object_class}/authenticate",
                             json={"username": username, "password": password.get_secret_value()})
        return str(data["uid"])

    def _do_create(self, object_class, attributes, options) -> str:
        data = self._request("POST", object_class, json=self._payload(attributes))
        uid = str(data["uid"])
        logger.debug(f"Created {object_class} {uid} on {self.resource_key}")
        return uid

    def _do_update(self, object_class, uid, attributes, options) -> str:
        data = self._request("PUT", f"{object_class}/{uid}", json=self._payload(attributes))
        return str(data["uid"]) if data and "uid" in data else uid

    def _do_delete(self, object_class, uid, options) -> None:
        self._request("DELETE", f"{object_class}/{uid}")

    def _do_sync(self, object_class: str, token: Optional[str], handler: SyncResultsHandler,
                 options: OperationOptions) -> None:
        params = {"token": token} if token else {}
        while True:
            data = self._request("GET", f"{object_class}/sync", params=params) or {}
            for item in data.get("deltas", []):
                delta = SyncDelta(
                    token=str(item["token"]) if item.get("token") is not None else None,
                    delta_type=item["type"],
                    uid=str(item["uid"]),
                    connector_object=self._to_object(object_class, item.get("object") or {"uid": item["uid"]}),
                )
                if not handler(delta):
                    return
            next_token = data.get("next_token")
            if not next_token:
                return
            params = {"token": next_token}

    def _do_get_latest_sync_token(self, object_class: str) -> Optional[str]:
        data = self._request("GET", f"{object_class}/sync/latest") or {}
        token = data.get("token")
        return str(token) if token is not None else None

    def _do_search_page(self, object_class: str, cond: Optional[SearchCond],
                        options: OperationOptions) -> Tuple[List[ConnectorObject], Optional[str]]:
        params: Dict[str, Any] = {}
        if options.page_size:
            params["pageSize"] = options.page_size
        if options.paged_results_cookie:
            params["cookie"] = options.paged_results_cookie
        if options.attributes_to_get:
            params["attributes"] = ",".join(options.attributes_to_get)

        data = self._request("GET", object_class, params=params) or {}
        objects = [self._to_object(object_class, item) for item in data.get("results", [])]
        if cond is not None:
            objects = filter_matching(cond, objects)
        return objects, data.get("cookie")

    def _do_get_object_class_info(self) -> List[ObjectClassInfo]:
        data = self._request("GET", "schema") or {}
        return [
            ObjectClassInfo(
                object_class=entry["name"],
                attributes=[AttributeInfo(**attr) for attr in entry.get("attributes", [])],
            )
            for entry in data.get("objectClasses", [])
        ]

    def _do_test(self) -> None:
        self._request("GET", "health")

    def _do_dispose(self) -> None:
        self.session.close()
