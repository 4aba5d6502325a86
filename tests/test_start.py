import pytest

from scripts.start import WSGI_TARGET, gunicorn_argv, resolve_port


def test_defaults():
    argv = gunicorn_argv({})
    assert argv[:2] == ["gunicorn", WSGI_TARGET]
    assert argv[argv.index("--bind") + 1] == "0.0.0.0:8080"
    assert argv[argv.index("--workers") + 1] == "2"
    assert argv[argv.index("--timeout") + 1] == "120"


def test_env_overrides():
    argv = gunicorn_argv({"PORT": " 5000 ", "WEB_CONCURRENCY": "4", "GUNICORN_TIMEOUT": "300"})
    assert argv[argv.index("--bind") + 1] == "0.0.0.0:5000"
    assert argv[argv.index("--workers") + 1] == "4"
    assert argv[argv.index("--timeout") + 1] == "300"


@pytest.mark.parametrize("env", [{"PORT": "http"}, {"PORT": "0"}, {"PORT": "70000"}, {"WEB_CONCURRENCY": "0"}, {"GUNICORN_TIMEOUT": "x"}])
def test_bad_values_stop_startup(env):
    with pytest.raises(SystemExit):
        gunicorn_argv(env)


def test_blank_port_uses_default():
    assert resolve_port({"PORT": "  "}) == 8080
