from unittest.mock import MagicMock, patch

import pytest
import requests

import reset_trigger


def make_response(status_code, body):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body
    return response


def test_trigger_reset_posts_to_endpoint():
    with patch("reset_trigger.requests.post", return_value=make_response(200, {"ok": True})) as post:
        body, status = reset_trigger.trigger_reset("daily", base_url="http://tracker:5000/", timeout=3)

    post.assert_called_once_with("http://tracker:5000/api/reset/daily", timeout=3)
    assert (body, status) == ({"ok": True}, 200)


def test_trigger_reset_handles_unreachable_server():
    with patch("reset_trigger.requests.post", side_effect=requests.ConnectionError("refused")):
        body, status = reset_trigger.trigger_reset("weekly", base_url="http://tracker:5000")

    assert status == 502
    assert body["ok"] is False


def test_trigger_reset_handles_non_json_body():
    response = make_response(502, None)
    response.json.side_effect = ValueError("no json")
    response.text = "Bad Gateway"
    with patch("reset_trigger.requests.post", return_value=response):
        body, status = reset_trigger.trigger_reset("daily", base_url="http://tracker:5000")

    assert status == 502
    assert body == {"ok": False, "raw": "Bad Gateway"}


def test_trigger_reset_rejects_unknown_kind():
    with pytest.raises(ValueError):
        reset_trigger.trigger_reset("monthly")


def test_main_exit_status():
    with patch("reset_trigger.trigger_reset", return_value=({"ok": True}, 200)):
        assert reset_trigger.main(["daily"]) == 0
    failure = ({"ok": False, "step": "snapshot", "error": "boom"}, 500)
    with patch("reset_trigger.trigger_reset", return_value=failure):
        assert reset_trigger.main(["daily", "--base-url", "http://tracker:5000"]) == 1
