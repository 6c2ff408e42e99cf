from unittest.mock import MagicMock

import cli


def _response(ok=True, payload=None):
    r = MagicMock()
    r.ok = ok
    r.json.return_value = payload or {}
    return r


def test_spawn_posts_camel_case_body(monkeypatch, capsys):
    post = MagicMock(return_value=_response(payload={"status": "running"}))
    monkeypatch.setattr(cli.requests, "post", post)

    rc = cli.main(
        ["--api", "http://gwm:9000/", "--key", "k", "spawn", "proj_0000000000000001", "--authenticator-password", "pw"]
    )

    assert rc == 0
    args, kwargs = post.call_args
    assert args[0] == "http://gwm:9000/internal/postgrest/spawn"
    assert kwargs["json"] == {"projectId": "proj_0000000000000001", "authenticatorPassword": "pw"}
    assert kwargs["headers"] == {"X-Internal-Key": "k"}
    assert '"running"' in capsys.readouterr().out


def test_error_response_sets_exit_code(monkeypatch):
    monkeypatch.setattr(cli.requests, "delete", MagicMock(return_value=_response(ok=False)))

    assert cli.main(["--key", "k", "destroy", "proj_0000000000000001"]) == 1


def test_key_is_required(monkeypatch):
    monkeypatch.delenv("GWM_INTERNAL_API_KEY", raising=False)

    assert cli.main(["list"]) == 2
