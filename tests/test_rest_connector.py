"""
Tests for the RestConnector.

HTTP traffic is mocked at the requests Session level.
"""

from unittest.mock import Mock

import pytest
import requests
from pydantic import SecretStr

from factories import make_resource
from recon_engine.connectors import RestConnector
from recon_engine.exceptions import ConfigurationError, ConnectorError, ConnectorErrorCategory
from recon_engine.models import NAME_ATTR, PASSWORD_ATTR, SyncDeltaType


def response(status_code=200, data=None):
    """Mock HTTP response."""
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_response.content = b"{}" if data is not None else b""
    mock_response.json.return_value = data
    return mock_response


def rest_resource(**config):
    settings = {"base_url": "https://idm.example.com/api/", "token": "t0k3n"}
    settings.update(config)
    resource = make_resource(key="hr-api")
    return resource.model_copy(update={"connector": "rest", "connector_config": settings})


class TestRestConnector:
    """Test cases for RestConnector."""

    @pytest.fixture
    def session(self, mocker):
        session = requests.Session()
        mocker.patch.object(session, "request")
        return session

    @pytest.fixture
    def connector(self, session):
        return RestConnector(rest_resource(), session=session)

    def test_base_url_is_required(self):
        with pytest.raises(ConfigurationError, match="base_url"):
            RestConnector(rest_resource(base_url=""))

    def test_bearer_token(self, connector, session):
        assert session.headers["Authorization"] == "Bearer t0k3n"
        assert connector.base_url == "https://idm.example.com/api"

    def test_basic_auth(self, session):
        RestConnector(rest_resource(token=None, username="svc", password="pw"), session=session)
        assert session.auth == ("svc", "pw")

    def test_create_sends_payload(self, connector, session):
        session.request.return_value = response(201, {"uid": "42"})

        uid = connector.create("users", {NAME_ATTR: ["jdoe"], "mail": ["jdoe@example.com"],
                                         PASSWORD_ATTR: [SecretStr("s3cret!")]})

        assert uid == "42"
        session.request.assert_called_once_with(
            "POST", "https://idm.example.com/api/users", timeout=30.0,
            json={"name": "jdoe", "password": "s3cret!", "attributes": {"mail": ["jdoe@example.com"]}},
        )

    @pytest.mark.parametrize("status_code,category", [
        (401, ConnectorErrorCategory.AUTH),
        (403, ConnectorErrorCategory.AUTH),
        (404, ConnectorErrorCategory.NOT_FOUND),
        (409, ConnectorErrorCategory.ALREADY_EXISTS),
        (500, ConnectorErrorCategory.UNKNOWN),
    ])
    def test_http_errors_are_categorized(self, connector, session, status_code, category):
        session.request.return_value = response(status_code)

        with pytest.raises(ConnectorError) as exc_info:
            connector.delete("users", "42")

        assert exc_info.value.category == category
        assert exc_info.value.resource == "hr-api"

    @pytest.mark.parametrize("error,category", [
        (requests.exceptions.ConnectTimeout("slow"), ConnectorErrorCategory.TIMEOUT),
        (requests.exceptions.ReadTimeout("slow"), ConnectorErrorCategory.TIMEOUT),
        (requests.exceptions.ConnectionError("refused"), ConnectorErrorCategory.CONNECT),
    ])
    def test_transport_errors_are_categorized(self, connector, session, error, category):
        session.request.side_effect = error

        with pytest.raises(ConnectorError) as exc_info:
            connector.test()

        assert exc_info.value.category == category

    def test_search_follows_cookies(self, connector, session):
        session.request.side_effect = [
            response(200, {"results": [{"uid": "1", "name": "a"}, {"uid": "2", "name": "b"}], "cookie": "c1"}),
            response(200, {"results": [{"uid": "3", "name": "c", "attributes": {"mail": "c@example.com"}}]}),
        ]
        seen = []

        connector.search("users", None, lambda obj: seen.append(obj) or True)

        assert [obj.uid for obj in seen] == ["1", "2", "3"]
        assert seen[2].get_values("mail") == ["c@example.com"]
        first_call, second_call = session.request.call_args_list
        assert first_call.kwargs["params"] == {"pageSize": 100}
        assert second_call.kwargs["params"] == {"pageSize": 100, "cookie": "c1"}

    def test_sync_follows_next_token(self, connector, session):
        session.request.side_effect = [
            response(200, {"deltas": [{"token": 5, "type": "CREATE", "uid": "1",
                                       "object": {"uid": "1", "name": "a"}}],
                           "next_token": "5"}),
            response(200, {"deltas": [{"token": 6, "type": "DELETE", "uid": "2"}]}),
        ]
        deltas = []

        connector.sync("users", "4", lambda delta: deltas.append(delta) or True)

        assert [(d.token, d.delta_type, d.uid) for d in deltas] == [
            ("5", SyncDeltaType.CREATE, "1"),
            ("6", SyncDeltaType.DELETE, "2"),
        ]
        assert session.request.call_args_list[0].kwargs["params"] == {"token": "4"}
        assert session.request.call_args_list[1].kwargs["params"] == {"token": "5"}

    def test_latest_sync_token(self, connector, session):
        session.request.return_value = response(200, {"token": 17})
        assert connector.get_latest_sync_token("users") == "17"

    def test_schema(self, connector, session):
        session.request.return_value = response(200, {"objectClasses": [
            {"name": "users", "attributes": [{"name": "mail", "required": True}]},
        ]})

        infos = connector.get_object_class_info()

        assert infos[0].object_class == "users"
        assert infos[0].attributes[0].required

    def test_dispose_closes_session(self, connector, session, mocker):
        close = mocker.patch.object(session, "close")

        connector.dispose()
        connector.dispose()

        close.assert_called_once()
