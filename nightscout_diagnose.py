#!/usr/bin/env python3
"""Diagnostics for a Docker Compose Nightscout deployment.

Sub-commands::

    system     host, Docker, ports, health endpoint, tunnel, DNS, resources, logs
    config     .env validation plus Docker / Compose / disk / image checks
    database   MONGO_CONNECTION, container, ping, database contents, API entries
    tunnel     cloudflared install, auth, config, service, connectivity, DNS

``system`` and ``tunnel`` are informational and always exit 0.  ``config``
and ``database`` record every check in a
:class:`~validation_checks.CheckLog` and exit 1 if any check failed.
"""

import argparse
import os
import platform
import shutil
import socket
import sys
from datetime import datetime
from pathlib import Path

import requests
from dotenv import load_dotenv

import env_file
from cloudflare_tunnel import CERT_NAME, CONFIG_NAME, TUNNEL_DIR, service_active
from docker_stack import (
    MONGO_CONTAINER,
    NIGHTSCOUT_CONTAINER,
    compose_command,
    container_running,
    docker_running,
    mongo_shell_eval,
)
from nightscout_api import DEFAULT_URL, NightscoutAPI
from ops_common import (
    PLACEHOLDER,
    _banner,
    _redact_uri,
    _run,
    _succeeds,
    database_name_from_uri,
    error,
    info,
    missing_commands,
    ok,
    warn,
)
from validation_checks import CheckLog

UTILITIES = ("curl", "docker", "docker-compose", "lsof", "netstat", "ss",
             "dig", "nslookup", "htop", "systemctl", "journalctl")
PORTS_TO_CHECK = (8080, 8081, 1337, 27017, 80, 443)
NIGHTSCOUT_IMAGE = "nightscout/cgm-remote-monitor"
MONGO_IMAGE = "mongo:4.4"

DISK_WARN_PERCENT = 80
DISK_ERROR_PERCENT = 90


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------

def port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    """True if something accepts TCP connections on *host*:*port*."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(1)
        return sock.connect_ex((host, port)) == 0


def dns_lookup(domain: str) -> list[str]:
    """Addresses *domain* resolves to; empty if it does not resolve."""
    try:
        infos = socket.getaddrinfo(domain, None)
    except socket.gaierror:
        return []
    return sorted({i[4][0] for i in infos})


def disk_usage_percent(path: Path = Path(".")) -> int:
    usage = shutil.disk_usage(path)
    return usage.used * 100 // usage.total


def _print_output(cmd: list[str]) -> None:
    try:
        result = _run(cmd, quiet=True)
    except FileNotFoundError:
        warn(f"{cmd[0]} not available")
        return
    text = (result.stdout or result.stderr).rstrip()
    if text:
        print("\n".join(f"    {line}" for line in text.splitlines()))


def _docker_available() -> bool:
    return not missing_commands(["docker"]) and docker_running()


def _tunnel_domain(env_path: Path) -> str:
    if not env_path.exists():
        return ""
    return env_file.read_env(env_path).get("CLOUDFLARE_DOMAIN", "")


# ---------------------------------------------------------------------------
# system
# ---------------------------------------------------------------------------

def section_system_info() -> None:
    _banner("SYSTEM INFORMATION")
    print(f"  Operating System: {platform.system()}")
    print(f"  Architecture:     {platform.machine()}")
    print(f"  Hostname:         {socket.gethostname()}")
    print(f"  Date:             {datetime.now():%Y-%m-%d %H:%M:%S}")


def section_utilities() -> None:
    _banner("AVAILABLE UTILITIES")
    missing = set(missing_commands(list(UTILITIES)))
    for util in UTILITIES:
        if util in missing:
            warn(f"{util} is not installed")
        else:
            ok(f"{util} is available")


def section_docker() -> None:
    _banner("DOCKER STATUS")
    if missing_commands(["docker"]):
        error("Docker is not installed")
        return
    if not docker_running():
        error("Docker daemon is not running")
        info("Start with: sudo systemctl start docker")
        return
    ok("Docker daemon is running")
    print(f"  Docker version: {_run(['docker', '--version'], quiet=True).stdout.strip()}")
    prefix = compose_command()
    if prefix:
        version = _run([*prefix, "version"], quiet=True).stdout.strip().splitlines()
        print(f"  Docker Compose: {version[0] if version else 'unknown'}")
    else:
        warn("Docker Compose is not available")

    _banner("RUNNING CONTAINERS")
    _print_output(["docker", "ps", "-a", "--format",
                   "table {{.Names}}\t{{.Status}}\t{{.Ports}}"])


def section_ports(ports=PORTS_TO_CHECK) -> None:
    _banner("PORT USAGE")
    for port in ports:
        if port_in_use(port):
            warn(f"Port {port} is in use")
        else:
            ok(f"Port {port} is available")


def section_health(env_path: Path, api: NightscoutAPI) -> None:
    _banner("NIGHTSCOUT HEALTH CHECKS")
    if env_path.exists():
        ok(f"{env_path} file exists")
        values = env_file.read_env(env_path)
        for var in ("API_SECRET", "MONGO_CONNECTION", "MONGO_INITDB_ROOT_PASSWORD"):
            if var not in values:
                error(f"{var} is missing from {env_path}")
            elif values[var] and PLACEHOLDER not in values[var]:
                ok(f"{var} is configured")
            else:
                error(f"{var} is not properly configured")
    else:
        error(f"{env_path} file not found - run ns-setup first")

    if Path("docker-compose.yml").exists():
        ok("docker-compose.yml exists")
    else:
        error("docker-compose.yml not found")

    info("Testing Nightscout connectivity...")
    code = api.status_code()
    if code == 200:
        ok(f"Nightscout is responding at {api.base_url}")
        try:
            status = api.status()
            print(f"  Version: {status.get('version', 'unknown')}  "
                  f"Status: {status.get('status', 'unknown')}")
        except (requests.RequestException, ValueError):
            warn("Status response is not valid JSON")
    elif code == 0:
        error(f"Cannot connect to Nightscout at {api.base_url}")
        info("Make sure Nightscout is running: docker compose up -d")
    else:
        warn(f"Nightscout returned HTTP {code}")


def section_tunnel_summary(tunnel_dir: Path) -> None:
    _banner("CLOUDFLARE TUNNEL STATUS")
    if not (tunnel_dir / CONFIG_NAME).exists():
        warn("No Cloudflare tunnel configuration found")
        info("Run 'ns-tunnel setup' to set up a tunnel")
        return
    ok("Cloudflare tunnel configuration found")
    if missing_commands(["cloudflared"]):
        warn("cloudflared is not installed")
        return
    ok(f"cloudflared is installed ({_run(['cloudflared', 'version'], quiet=True).stdout.strip()})")
    if service_active():
        ok("Cloudflare tunnel service is running")
    else:
        warn("Cloudflare tunnel service is not running")
        info("Start with: sudo systemctl start cloudflared")


def section_dns(domain: str, title: str = "DNS CHECKS") -> None:
    _banner(title)
    if not domain:
        info("CLOUDFLARE_DOMAIN not set; skipping")
        return
    info(f"Checking DNS for domain: {domain}")
    addresses = dns_lookup(domain)
    if addresses:
        ok(f"DNS resolves to: {', '.join(addresses)}")
    else:
        warn(f"DNS does not resolve for {domain}")


def section_resources() -> None:
    _banner("SYSTEM RESOURCES")
    if not missing_commands(["free"]):
        print("  Memory usage:")
        _print_output(["free", "-h"])
    usage = shutil.disk_usage("/")
    print(f"  Disk usage (/): {usage.used * 100 // usage.total}% "
          f"({usage.free // (1024 ** 3)} GB free)")
    if hasattr(os, "getloadavg"):
        print("  Load average: " + " ".join(f"{v:.2f}" for v in os.getloadavg()))


def section_logs() -> None:
    _banner("LOG ANALYSIS")
    if not _docker_available():
        warn("Cannot check Docker logs - Docker not available")
    else:
        for container, lines in ((NIGHTSCOUT_CONTAINER, "10"), (MONGO_CONTAINER, "5")):
            if container_running(container):
                info(f"Recent logs for {container}:")
                _print_output(["docker", "logs", f"--tail={lines}", container])
            else:
                warn(f"{container} container not found")
    if not missing_commands(["journalctl"]):
        info("Recent Cloudflare tunnel logs:")
        _print_output(["journalctl", "-u", "cloudflared", "--no-pager", "-n", "5"])


def run_system(env_path: Path, api: NightscoutAPI, tunnel_dir: Path) -> None:
    _banner("Nightscout Deployment Diagnostics")
    section_system_info()
    section_utilities()
    section_docker()
    section_ports()
    section_health(env_path, api)
    section_tunnel_summary(tunnel_dir)
    section_dns(_tunnel_domain(env_path))
    section_resources()
    section_logs()

    _banner("RECOMMENDATIONS")
    print("  1. If containers aren't running: docker compose up -d")
    print("  2. If ports are in use: check them with lsof -i :PORT")
    print("  3. If Nightscout isn't responding: docker compose logs nightscout")
    print("  4. If the tunnel isn't working: ns-tunnel logs")


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------

def check_config(env_path: Path, log: CheckLog | None = None) -> CheckLog:
    """Environment file plus host readiness checks."""
    log = log or CheckLog()
    _banner("Validating environment file")
    log.extend(env_file.validate_env(env_path))

    _banner("Checking Docker installation")
    if missing_commands(["docker"]):
        log.error("Docker is not installed")
        return log
    log.success("Docker is installed")
    if not docker_running():
        log.error("Docker daemon is not running")
        return log
    log.success("Docker daemon is running")
    if compose_command():
        log.success("Docker Compose is available")
    else:
        log.error("Docker Compose is not available")

    for container, label in ((NIGHTSCOUT_CONTAINER, "Nightscout"),
                             (MONGO_CONTAINER, "MongoDB")):
        if container_running(container):
            log.success(f"{label} container is running")
        else:
            log.warning(f"{label} container is not running (start with: docker compose up -d)")

    if port_in_use(1337):
        log.warning("Port 1337 is already in use")
    else:
        log.success("Port 1337 is available")

    percent = disk_usage_percent()
    if percent > DISK_ERROR_PERCENT:
        log.error(f"Disk usage is high ({percent}%)")
    elif percent > DISK_WARN_PERCENT:
        log.warning(f"Disk usage is moderate ({percent}%)")
    else:
        log.success(f"Disk usage is acceptable ({percent}%)")

    for image, label in ((NIGHTSCOUT_IMAGE, "Nightscout"), (MONGO_IMAGE, "MongoDB")):
        if _succeeds(["docker", "image", "inspect", image]):
            log.success(f"{label} Docker image is available")
        else:
            log.warning(f"{label} Docker image not found (pulled on first start)")
    return log


# ---------------------------------------------------------------------------
# database
# ---------------------------------------------------------------------------

def check_database(env_path: Path, api: NightscoutAPI,
                   log: CheckLog | None = None) -> CheckLog:
    """Database naming and contents as seen from the mongo container."""
    log = log or CheckLog()
    _banner("Database Validation")
    if not env_path.exists():
        log.error(f"{env_path} file not found")
        return log
    values = env_file.read_env(env_path)
    connection = values.get("MONGO_CONNECTION", "")
    if not connection:
        log.error(f"MONGO_CONNECTION not found in {env_path}")
        return log
    info(f"Current connection string: {_redact_uri(connection)}")
    db_name = database_name_from_uri(connection, default="")
    if not db_name:
        log.error("Could not extract database name from connection string")
        return log
    info(f"Database name: {db_name}")

    if not container_running(MONGO_CONTAINER):
        log.error("MongoDB container is not running (start with: docker compose up -d)")
        return log
    log.success("MongoDB container is running")

    password = values.get("MONGO_INITDB_ROOT_PASSWORD", "")
    if not password:
        log.error(f"MongoDB password not found in {env_path}")
        return log
    if mongo_shell_eval("db.adminCommand('ping').ok", password) is None:
        log.error("Database connectivity test failed")
        return log
    log.success("Database connectivity verified")

    exists = mongo_shell_eval(
        f"db.getMongo().getDBNames().indexOf('{db_name}') >= 0", password)
    if exists != "true":
        log.error(f"Database '{db_name}' does not exist")
        names = mongo_shell_eval("db.getMongo().getDBNames().join(',')", password) or ""
        user_dbs = [n for n in names.split(",") if n and n not in ("admin", "local", "config")]
        info(f"Available databases: {', '.join(user_dbs) or '(none)'}")
    else:
        log.success(f"Database '{db_name}' exists")
        objects = mongo_shell_eval("db.stats().objects", password, db_name)
        if objects and objects.isdigit() and int(objects) > 0:
            log.success(f"Database contains {objects} objects")
        else:
            log.warning("Database exists but contains no data")
        collections = mongo_shell_eval("db.getCollectionNames().join(',')", password, db_name)
        if collections:
            info("Collections found:")
            for name in collections.split(","):
                print(f"    - {name}")
        else:
            log.warning("No collections found in database")

    if api.is_up():
        log.success("Nightscout is accessible")
        try:
            entries = api.recent_entries(1)
        except (requests.RequestException, ValueError):
            log.warning("Nightscout API response is not valid JSON")
        else:
            if entries:
                log.success(f"Nightscout can see {len(entries)} entries")
            else:
                log.warning("Nightscout is running but shows no entries")
    else:
        log.warning("Nightscout is not accessible (may be starting up)")

    if log.has_errors:
        print("\n  If the database name is wrong, point MONGO_CONNECTION at the "
              "imported database and restart:")
        print("    docker compose restart nightscout")
    return log


# ---------------------------------------------------------------------------
# tunnel
# ---------------------------------------------------------------------------

def run_tunnel(env_path: Path, tunnel_dir: Path, local_api: NightscoutAPI,
               domain: str = "") -> None:
    domain = domain or _tunnel_domain(env_path)
    if not domain:
        domain = input("  Enter your domain (e.g., nightscout.yourdomain.com): ").strip()
    info(f"Debugging domain: {domain}")

    _banner("1. SYSTEM PREREQUISITES")
    if missing_commands(["cloudflared"]):
        error("cloudflared not installed")
    else:
        ok(f"cloudflared installed: {_run(['cloudflared', 'version'], quiet=True).stdout.strip()}")
    if _docker_available():
        ok("Docker is running")
    else:
        error("Docker is not running or not installed")

    _banner("2. CLOUDFLARE AUTHENTICATION")
    cert = tunnel_dir / CERT_NAME
    if cert.exists():
        ok("Certificate authentication file found")
        if not missing_commands(["openssl"]):
            subject = _run(["openssl", "x509", "-in", str(cert), "-noout", "-subject"],
                           quiet=True).stdout.strip()
            info(f"Certificate: {subject or 'unable to read certificate'}")
    else:
        warn(f"No certificate file found at {cert}")

    _banner("3. TUNNEL CONFIGURATION")
    config_path = tunnel_dir / CONFIG_NAME
    if config_path.exists():
        ok("Tunnel configuration file exists")
        print(config_path.read_text(encoding="utf-8"))
    else:
        error(f"Tunnel configuration file not found at {config_path}")
    if not missing_commands(["cloudflared"]):
        info("Available tunnels:")
        _print_output(["cloudflared", "tunnel", "list"])

    _banner("4. CLOUDFLARED SERVICE STATUS")
    if _succeeds(["systemctl", "is-enabled", "cloudflared"]):
        ok("cloudflared service is enabled")
    else:
        warn("cloudflared service is not enabled")
    running = service_active()
    if running:
        ok("cloudflared service is running")
        info("Recent service logs (last 10 lines):")
        _print_output(["journalctl", "-u", "cloudflared", "--no-pager", "-n", "10"])
    else:
        error("cloudflared service is not running")
        _print_output(["systemctl", "status", "cloudflared", "--no-pager", "-l"])

    _banner("5. NETWORK CONNECTIVITY")
    local_up = local_api.is_up()
    if local_up:
        ok(f"Nightscout is running locally ({local_api.base_url})")
    else:
        warn(f"Nightscout is not responding on {local_api.base_url}")
    public = NightscoutAPI(f"https://{domain}")
    code = public.status_code()
    public_up = code == 200
    if public_up:
        ok("External tunnel connectivity successful")
    else:
        error(f"External tunnel connectivity failed (HTTP {code or 'no response'})")

    section_dns(domain, "6. DNS RESOLUTION")

    _banner("7. DOCKER CONTAINER STATUS")
    if _docker_available():
        _print_output(["docker", "ps", "-a", "--filter", "name=nightscout", "--format",
                       "table {{.Names}}\t{{.Status}}\t{{.Ports}}"])
        _print_output(["docker", "network", "ls", "--filter", "name=nightscout"])

    _banner("8. TROUBLESHOOTING RECOMMENDATIONS")
    if running and public_up:
        ok("Everything appears to be working correctly!")
    elif running:
        warn("Service is running but external access failed")
        print("  1. Wait 5-10 minutes for DNS propagation")
        print("  2. Check the domain in the Cloudflare dashboard")
        print("  3. Check tunnel logs: ns-tunnel logs")
    else:
        error("Service is not running")
        print("  1. Restart the service: ns-tunnel restart")
        print(f"  2. Check configuration: cat {config_path}")
        print("  3. Re-run setup: ns-tunnel setup --domain " + domain)
    if not local_up:
        warn("Nightscout is not running locally; start it with: docker compose up -d")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> None:
    """Entry point for ``ns-diagnose``."""
    load_dotenv()
    parser = argparse.ArgumentParser(description="Diagnose a Nightscout deployment")
    parser.add_argument("--env-file", type=Path, default=env_file.DEFAULT_ENV_PATH,
                        help="Nightscout environment file (default: .env)")
    parser.add_argument("--url", default=os.environ.get("NIGHTSCOUT_URL", DEFAULT_URL),
                        help="Local Nightscout URL (default: http://localhost:8080)")
    parser.add_argument("--tunnel-dir", type=Path, default=TUNNEL_DIR,
                        help="cloudflared directory (default: ~/.cloudflared)")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("system", help="Full deployment diagnostics")
    sub.add_parser("config", help="Validate configuration (exit 1 on errors)")
    sub.add_parser("database", help="Validate database naming and contents (exit 1 on errors)")
    p = sub.add_parser("tunnel", help="Debug the Cloudflare tunnel")
    p.add_argument("--domain", default="", help="Domain (default: CLOUDFLARE_DOMAIN)")
    args = parser.parse_args(argv)

    api = NightscoutAPI(args.url, os.environ.get("API_SECRET"))
    if args.command == "system":
        run_system(args.env_file, api, args.tunnel_dir)
    elif args.command == "tunnel":
        run_tunnel(args.env_file, args.tunnel_dir, api, args.domain)
    else:
        if args.command == "config":
            log = check_config(args.env_file)
        else:
            log = check_database(args.env_file, api)
        _banner("Validation Summary")
        log.print_summary()
        sys.exit(log.exit_code())


if __name__ == "__main__":
    main()
