#!/usr/bin/env python3
import argparse
import logging
import os
import re
import socket
import ssl
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import parse_qs
from wsgiref.simple_server import WSGIRequestHandler, make_server

import yaml
from prometheus_client.exposition import CONTENT_TYPE_LATEST, ThreadingWSGIServer
from pythonjsonlogger.json import JsonFormatter

logger = logging.getLogger("zookeeper_exporter")

DEFAULT_LISTEN = "0.0.0.0:9141"
DEFAULT_LOCATION = "/metrics"
DEFAULT_TIMEOUT = 30.0
DEFAULT_WORKERS = 1
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FORMAT = "text"

MNTR = "mntr"
RUOK = "ruok"
RUOK_OK = "imok"

INSTANCE_NOT_SERVING_MESSAGE = "This ZooKeeper instance is not currently serving requests"
CMD_NOT_EXECUTED_SUFFIX = "is not executed because it is not in the whitelist."
# args: command, host
COMMAND_NOT_ALLOWED_TMPL = "\"%s\" command isn't allowed at %s, see '4lw.commands.whitelist' ZK config parameter"

VERSION_RE = re.compile(r"^([0-9]+\.[0-9]+\.[0-9]+).*$")
_METRIC_NAME_TABLE = str.maketrans({"-": "_", ".": "_"})
_LABEL_VALUE_TABLE = str.maketrans({"\\": "\\\\", "\"": "\\\"", "\n": "\\n"})

_READ_CHUNK = 4096


class ExporterError(Exception):
    pass


class ConfigError(ExporterError):
    """Startup configuration is unusable; the exporter must not start."""


class ProbeError(ExporterError):
    """A failure local to one target. Never fatal at scrape time."""

    def __init__(self, host: str, message: str):
        super().__init__(f"{host}: {message}")
        self.host = host


class ResolutionError(ProbeError):
    pass


class ConnectError(ProbeError):
    pass


class CommandIOError(ProbeError):
    pass


class NonServingMode(ProbeError):
    pass


class ProtocolRejection(ProbeError):
    def __init__(self, host: str, command: str):
        super().__init__(host, f"{command!r} is not in the whitelist")
        self.command = command


@dataclass(frozen=True)
class Target:
    host: str
    # client identity for mutual TLS, None for plain TCP
    ssl_context: Optional[ssl.SSLContext] = field(default=None, repr=False, compare=False)


@dataclass
class ProbeResult:
    text: str = ""
    error: Optional[ProbeError] = None

    @property
    def connected(self) -> bool:
        return not isinstance(self.error, (ResolutionError, ConnectError))


# --- Prober ---

def _split_host_port(address: str) -> Tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"missing port in address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"too many colons in address {address!r}")
    if not port.isdigit() or int(port) > 65535:
        raise ValueError(f"invalid port in address {address!r}")
    return host, int(port)


def resolve(target: Target) -> Tuple[int, Tuple[Any, ...]]:
    try:
        host, port = _split_host_port(target.host)
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except (ValueError, OSError) as e:
        raise ResolutionError(target.host, f"cannot resolve zk hostname: {e}") from e
    if not infos:
        raise ResolutionError(target.host, "cannot resolve zk hostname: no addresses")
    family, _socktype, _proto, _canonname, sockaddr = infos[0]
    return family, sockaddr


def _remaining(deadline: float) -> float:
    left = deadline - time.monotonic()
    if left <= 0:
        raise socket.timeout("probe deadline exceeded")
    return left


def _connect(target: Target, family: int, sockaddr: Tuple[Any, ...], deadline: float) -> socket.socket:
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.settimeout(_remaining(deadline))
        sock.connect(sockaddr)
        if target.ssl_context is not None:
            # handshake happens here and is bounded by the socket timeout
            sock = target.ssl_context.wrap_socket(sock, server_hostname=_split_host_port(target.host)[0])
    except OSError as e:
        sock.close()
        raise ConnectError(target.host, f"cannot connect: {e}") from e
    return sock


def _exchange(sock: socket.socket, target: Target, command: str, deadline: float) -> str:
    try:
        sock.settimeout(_remaining(deadline))
        sock.sendall(command.encode("ascii"))
    except OSError as e:
        raise CommandIOError(target.host, f"failed to send {command!r}: {e}") from e

    # no framing: the server closes the connection after the response
    chunks: List[bytes] = []
    try:
        while True:
            sock.settimeout(_remaining(deadline))
            try:
                chunk = sock.recv(_READ_CHUNK)
            except ssl.SSLEOFError:
                # peer closed without close_notify
                break
            if not chunk:
                break
            chunks.append(chunk)
    except OSError as e:
        raise CommandIOError(target.host, f"failed to read {command!r} response: {e}") from e

    return b"".join(chunks).decode("utf-8", errors="replace")


def probe(target: Target, command: str, timeout: float) -> ProbeResult:
    """Send one four-letter command to ``target`` on a fresh connection.

    ``timeout`` bounds connect, write and read together.
    Errors are returned in the result, never raised. A failed write or read
    is logged here and leaves ``text`` empty.
    """
    deadline = time.monotonic() + timeout
    try:
        family, sockaddr = resolve(target)
        sock = _connect(target, family, sockaddr, deadline)
    except ProbeError as e:
        return ProbeResult(error=e)

    try:
        return ProbeResult(text=_exchange(sock, target, command, deadline))
    except CommandIOError as e:
        logger.warning("%s", e)
        return ProbeResult(error=e)
    finally:
        sock.close()


# --- Parser ---

def _escape_label_value(value: str) -> str:
    return value.translate(_LABEL_VALUE_TABLE)


def _host_label(host: str) -> str:
    return f'zk_host="{_escape_label_value(host)}"'


def _metric(name: str, host: str, **labels: str) -> str:
    extra = "".join(f',{k}="{_escape_label_value(v)}"' for k, v in labels.items())
    return f"{name}{{{_host_label(host)}{extra}}}"


def _mntr_metric(key: str, host: str) -> str:
    name = key.translate(_METRIC_NAME_TABLE)
    if "}" in name:
        # key carries its own labels, e.g. zk_foo{quantile="0.5"}
        return f"{name.replace('}', ',', 1)}{_host_label(host)}}}"
    return f"{name}{{{_host_label(host)}}}"


def _is_number(value: str) -> bool:
    # float() also takes surrounding whitespace and digit underscores
    if value != value.strip() or "_" in value:
        return False
    try:
        float(value)
    except ValueError:
        return False
    return True


def _log_not_allowed(command: str, host: str) -> None:
    logger.warning(COMMAND_NOT_ALLOWED_TMPL, command, host)


def check_response(response_text: str, command: str, host: str) -> None:
    """Raise for the degraded responses, judged by the first line only."""
    first_line = response_text.split("\n", 1)[0]
    if first_line == INSTANCE_NOT_SERVING_MESSAGE:
        raise NonServingMode(host, "instance is not currently serving requests")
    if CMD_NOT_EXECUTED_SUFFIX in first_line:
        raise ProtocolRejection(host, command)


def parse(response_text: str, host: str) -> Dict[str, str]:
    """Translate a ``mntr`` response from ``host`` into metric lines.

    A non-serving instance (leader with leaderServes=no) yields only
    ``zk_up=1`` and ``zk_server_leader=1``; a whitelist rejection yields
    only ``zk_up=0``. Every other response yields one entry per usable
    line and no ``zk_up``.
    """
    try:
        check_response(response_text, MNTR, host)
    except NonServingMode:
        return {_metric("zk_up", host): "1", _metric("zk_server_leader", host): "1"}
    except ProtocolRejection as e:
        _log_not_allowed(e.command, host)
        return {_metric("zk_up", host): "0"}

    metrics: Dict[str, str] = {}
    for line in response_text.split("\n"):
        key, _sep, value = line.replace("\t", " ").partition(" ")
        if not key:
            continue

        if key == "zk_server_state":
            metrics[_metric("zk_server_leader", host)] = "1" if value == "leader" else "0"
        elif key == "zk_version":
            m = VERSION_RE.match(value)
            version = m.group(1) if m else value
            metrics[_metric("zk_version", host, version=version)] = "1"
        elif key == "zk_peer_state":
            metrics[_metric("zk_peer_state", host, state=value)] = "1"
        else:
            if not _is_number(value):
                logger.warning("skipping metric %r which holds not-digit value: %r", key, value)
                continue
            metrics[_mntr_metric(key, host)] = value

    return metrics


# --- Collection ---

def collect_host(target: Target, timeout: float) -> Dict[str, str]:
    zk_up = _metric("zk_up", target.host)

    res = probe(target, MNTR, timeout)
    if not res.connected:
        logger.warning("cannot probe %s: %s", target.host, res.error)
        return {zk_up: "0"}

    metrics = parse(res.text, target.host)
    # zk_up is only set while parsing for the short-circuit responses
    if zk_up in metrics:
        return metrics

    zk_ruok = _metric("zk_ruok", target.host)
    res = probe(target, RUOK, timeout)
    if res.text == RUOK_OK:
        metrics[zk_ruok] = "1"
    else:
        if CMD_NOT_EXECUTED_SUFFIX in res.text:
            _log_not_allowed(RUOK, target.host)
        elif res.error is not None and not res.connected:
            logger.debug("ruok probe failed: %s", res.error)
        metrics[zk_ruok] = "0"

    metrics[zk_up] = "1"
    return metrics


def _collect_isolated(target: Target, timeout: float) -> Dict[str, str]:
    try:
        return collect_host(target, timeout)
    except Exception:
        logger.exception("unexpected error while probing %s", target.host)
        return {_metric("zk_up", target.host): "0"}


def collect(targets: Iterable[Target], timeout: float, max_workers: int = DEFAULT_WORKERS) -> Dict[str, str]:
    """Probe every target and merge the results into one snapshot.

    Targets are probed one after another unless ``max_workers`` > 1, in
    which case they fan out over a thread pool. Each target contributes its
    own keys, so the merge is a plain union.
    """
    targets = list(targets)
    snapshot: Dict[str, str] = {}

    if max_workers <= 1 or len(targets) <= 1:
        for target in targets:
            snapshot.update(_collect_isolated(target, timeout))
        return snapshot

    with ThreadPoolExecutor(max_workers=min(max_workers, len(targets))) as executor:
        futures = [executor.submit(_collect_isolated, target, timeout) for target in targets]
        for future in as_completed(futures):
            snapshot.update(future.result())

    return snapshot


def render(snapshot: Mapping[str, str]) -> str:
    return "".join(f"{key} {value}\n" for key, value in snapshot.items())


# --- Configuration ---

@dataclass(frozen=True)
class Settings:
    hosts: Tuple[str, ...]
    listen: str = DEFAULT_LISTEN
    location: str = DEFAULT_LOCATION
    timeout: float = DEFAULT_TIMEOUT
    tls_auth: bool = False
    tls_cert: Optional[str] = None
    tls_key: Optional[str] = None
    workers: int = DEFAULT_WORKERS
    log_level: str = DEFAULT_LOG_LEVEL
    log_format: str = DEFAULT_LOG_FORMAT
    ssl_context: Optional[ssl.SSLContext] = field(default=None, repr=False, compare=False)

    @property
    def targets(self) -> List[Target]:
        return [Target(host, self.ssl_context) for host in self.hosts]


def _load_config(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"can't read config file {path}: {e}") from e
    if not isinstance(cfg, dict):
        raise ConfigError(f"config file {path} must hold a mapping")
    return cfg


def _split_hosts(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    parts = value.split(",") if isinstance(value, str) else [str(v) for v in value]
    return tuple(p.strip() for p in parts if p.strip())


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _first(*values: Any) -> Any:
    for v in values:
        if v is not None:
            return v
    return None


def _client_ssl_context(cert: str, key: str) -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    # the four-letter-word port has no server identity to check
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    try:
        ctx.load_cert_chain(certfile=cert, keyfile=key)
    except OSError as e:
        raise ConfigError(f"can't load keypair {key}, {cert}: {e}") from e
    return ctx


def _arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="ZooKeeper exporter for Prometheus")
    p.add_argument("--config", help="YAML config file (env ZK_EXPORTER_CONFIG)")
    p.add_argument("--listen", help=f"address to listen on (default {DEFAULT_LISTEN})")
    p.add_argument("--location", help=f"metrics location (default {DEFAULT_LOCATION})")
    p.add_argument("--timeout", help="timeout for a whole probe of one zk server, in seconds")
    p.add_argument("--zk-hosts", help="comma separated list of zk servers, e.g. '10.0.0.1:2181,10.0.0.2:2181'")
    p.add_argument("--zk-tls-auth", action="store_true", default=None, help="zk tls client authentication")
    p.add_argument("--zk-tls-auth-cert", help="cert for zk tls client authentication")
    p.add_argument("--zk-tls-auth-key", help="key for zk tls client authentication")
    p.add_argument("--workers", help="number of zk servers probed in parallel (default 1)")
    p.add_argument("--log-level", help=f"logging level (default {DEFAULT_LOG_LEVEL})")
    p.add_argument("--log-format", choices=["text", "json"], help="log output format (default text)")
    return p


def load_settings(argv: Optional[Sequence[str]] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from flags, then environment, then YAML file, then defaults."""
    env = os.environ if environ is None else environ
    args = _arg_parser().parse_args(argv)

    cfg = _load_config(_first(args.config, env.get("ZK_EXPORTER_CONFIG")))
    tls_cfg = cfg.get("tls") or {}
    if not isinstance(tls_cfg, dict):
        raise ConfigError("'tls' section of the config file must be a mapping")

    hosts = _split_hosts(_first(args.zk_hosts, env.get("ZK_EXPORTER_HOSTS"), cfg.get("zk_hosts")))
    if not hosts:
        raise ConfigError("no target zookeeper hosts specified")

    listen = str(_first(args.listen, env.get("ZK_EXPORTER_LISTEN"), cfg.get("listen"), DEFAULT_LISTEN))
    try:
        _split_host_port(listen)
    except ValueError as e:
        raise ConfigError(f"bad listen address: {e}") from e

    location = str(_first(args.location, env.get("ZK_EXPORTER_LOCATION"), cfg.get("location"), DEFAULT_LOCATION))
    if not location.startswith("/"):
        raise ConfigError(f"metrics location must start with '/': {location!r}")

    raw_timeout = _first(args.timeout, env.get("ZK_EXPORTER_TIMEOUT"), cfg.get("timeout"), DEFAULT_TIMEOUT)
    try:
        timeout = float(raw_timeout)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"bad timeout {raw_timeout!r}") from e
    if timeout <= 0:
        raise ConfigError(f"timeout must be positive, got {timeout}")

    raw_workers = _first(args.workers, env.get("ZK_EXPORTER_WORKERS"), cfg.get("workers"), DEFAULT_WORKERS)
    try:
        workers = int(raw_workers)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"bad workers {raw_workers!r}") from e
    if workers < 1:
        raise ConfigError(f"workers must be at least 1, got {workers}")

    log_level = str(_first(args.log_level, env.get("ZK_EXPORTER_LOG_LEVEL"), cfg.get("log_level"), DEFAULT_LOG_LEVEL)).upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"unknown log level {log_level!r}")

    log_format = str(_first(args.log_format, env.get("ZK_EXPORTER_LOG_FORMAT"), cfg.get("log_format"), DEFAULT_LOG_FORMAT))
    if log_format not in ("text", "json"):
        raise ConfigError(f"unknown log format {log_format!r}")

    tls_auth = _parse_bool(_first(args.zk_tls_auth, env.get("ZK_EXPORTER_TLS_AUTH"), tls_cfg.get("auth"), False))
    tls_cert = _first(args.zk_tls_auth_cert, env.get("ZK_EXPORTER_TLS_CERT"), tls_cfg.get("cert"))
    tls_key = _first(args.zk_tls_auth_key, env.get("ZK_EXPORTER_TLS_KEY"), tls_cfg.get("key"))

    ssl_context = None
    if tls_auth:
        if not tls_cert or not tls_key:
            raise ConfigError("--zk-tls-auth-cert and --zk-tls-auth-key are required when --zk-tls-auth is set")
        ssl_context = _client_ssl_context(str(tls_cert), str(tls_key))

    return Settings(
        hosts=hosts,
        listen=listen,
        location=location,
        timeout=timeout,
        tls_auth=tls_auth,
        tls_cert=tls_cert,
        tls_key=tls_key,
        workers=workers,
        log_level=log_level,
        log_format=log_format,
        ssl_context=ssl_context,
    )


def setup_logging(level: str = DEFAULT_LOG_LEVEL, fmt: str = DEFAULT_LOG_FORMAT) -> None:
    if fmt == "json":
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            timestamp=True,
        ))
        root = logging.getLogger()
        root.handlers = [handler]
        root.setLevel(level.upper())
        return

    logging.basicConfig(
        level=level.upper(),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


# --- HTTP ---

def _http_response(start_response, status: str, headers: List[Tuple[str, str]], body: bytes):
    start_response(status, headers)
    return [body]


def _targets_from_query(query_string: str, ssl_context: Optional[ssl.SSLContext]) -> List[Target]:
    values = parse_qs(query_string).get("target", [])
    return [Target(host, ssl_context) for v in values for host in _split_hosts(v)]


def make_app(settings: Settings):
    def app(environ, start_response):
        path = environ.get("PATH_INFO", "/")
        method = environ.get("REQUEST_METHOD", "GET").upper()

        if path == settings.location:
            if method not in ("GET", "HEAD"):
                return _http_response(
                    start_response,
                    "405 Method Not Allowed",
                    [("Content-Type", "text/plain; charset=utf-8"), ("Allow", "GET, HEAD")],
                    b"method not allowed\n",
                )

            # ?target=... replaces the configured hosts for this request only
            targets = _targets_from_query(environ.get("QUERY_STRING", ""), settings.ssl_context) or settings.targets
            snapshot = collect(targets, settings.timeout, settings.workers)
            return _http_response(
                start_response,
                "200 OK",
                [("Content-Type", CONTENT_TYPE_LATEST)],
                render(snapshot).encode("utf-8"),
            )

        if path == "/health":
            return _http_response(
                start_response,
                "200 OK",
                [("Content-Type", "text/plain; charset=utf-8")],
                b"ok\n",
            )

        return _http_response(
            start_response,
            "404 Not Found",
            [("Content-Type", "text/plain; charset=utf-8")],
            b"not found\n",
        )

    return app


class _LoggingHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)


def make_http_server(settings: Settings):
    host, port = _split_host_port(settings.listen)
    return make_server(host, port, make_app(settings), ThreadingWSGIServer, handler_class=_LoggingHandler)


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        settings = load_settings(argv)
    except ConfigError as e:
        setup_logging()
        logger.critical("fatal: %s", e)
        return 1

    setup_logging(settings.log_level, settings.log_format)
    logger.info("zookeeper hosts: %s", ", ".join(settings.hosts))

    try:
        httpd = make_http_server(settings)
    except OSError as e:
        logger.critical("fatal: can't listen on %s: %s", settings.listen, e)
        return 1

    logger.info("serving metrics at %s%s", settings.listen, settings.location)
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        httpd.server_close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
