"""HTTP(S) forward-proxy environment for tools that ignore transparent redirection."""

from .state import Exports

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3128

PROXY_VARS = ("http_proxy", "HTTP_PROXY", "https_proxy", "HTTPS_PROXY")
NO_PROXY_VARS = ("no_proxy", "NO_PROXY")
NO_PROXY_HOSTS = ("app.invisirisk.com", "localhost", "127.0.0.1")


def http_proxy_env(host: str = DEFAULT_HOST, port: int = DEFAULT_PORT,
                   extra_no_proxy: tuple[str, ...] = ()) -> dict[str, str]:
    url = f"http://{host}:{port}"
    no_proxy = ",".join(dict.fromkeys(NO_PROXY_HOSTS + tuple(h for h in extra_no_proxy if h)))
    env = {name: url for name in PROXY_VARS}
    env.update({name: no_proxy for name in NO_PROXY_VARS})
    return env


def set_http_proxy_env(exports: Exports, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT,
                       extra_no_proxy: tuple[str, ...] = ()) -> dict[str, str]:
    env = http_proxy_env(host, port, extra_no_proxy)
    exports.set(env)
    return env


def clear_http_proxy_env(exports: Exports) -> None:
    exports.clear(PROXY_VARS + NO_PROXY_VARS)
