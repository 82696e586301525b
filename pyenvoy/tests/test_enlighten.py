import pytest
import requests
from unittest.mock import MagicMock

from pyenvoy import enlighten
from pyenvoy.exceptions import LoginError


def make_response(status=200, payload=None, text=""):
    r = MagicMock()
    r.status_code = status
    r.json.return_value = payload
    r.text = text
    return r


def test_fetch_jwt():
    session = MagicMock()
    session.post.side_effect = [
        make_response(payload={"message": "success", "session_id": "web-session"}),
        make_response(text="eyJraWQiOi.token\n"),
    ]
    token = enlighten.fetch_jwt(session, "me@example.com", "secret", "122012345678")
    assert token == "eyJraWQiOi.token"

    login_call, token_call = session.post.call_args_list
    assert login_call.args[0] == enlighten.ENLIGHTEN_LOGIN_URL
    assert login_call.kwargs['data'] == {"user[email]": "me@example.com", "user[password]": "secret"}
    assert token_call.args[0] == enlighten.ENTREZ_TOKEN_URL
    assert token_call.kwargs['json'] == {"session_id": "web-session", "serial_num": "122012345678",
                                         "username": "me@example.com"}


def test_login_rejected():
    session = MagicMock()
    session.post.return_value = make_response(payload={"message": "Invalid email or password"})
    with pytest.raises(LoginError, match="Invalid email or password"):
        enlighten.login(session, "me@example.com", "wrong")


def test_login_unreachable():
    session = MagicMock()
    session.post.side_effect = requests.exceptions.ConnectionError("no route")
    with pytest.raises(LoginError):
        enlighten.login(session, "me@example.com", "secret")


def test_token_request_failed():
    session = MagicMock()
    session.post.return_value = make_response(status=403)
    with pytest.raises(LoginError):
        enlighten.request_token(session, "web-session", "122012345678", "me@example.com")


def test_missing_credentials():
    with pytest.raises(LoginError):
        enlighten.fetch_jwt(MagicMock(), "", "", "122012345678")
