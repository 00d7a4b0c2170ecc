#!/usr/bin/env python3
"""Cloudflare Tunnel lifecycle for a self-hosted Nightscout.

The tunnel is an outbound connection from ``cloudflared`` to Cloudflare's
edge, so Nightscout is reachable at ``https://<domain>`` without opening
any inbound port on the host.

SETUP FLOW
==========

::

    install_cloudflared()        GitHub release -> /usr/local/bin/cloudflared
            |
    cloudflared tunnel login     ~/.cloudflared/cert.pem  (or transfer-cert)
            |
    create_tunnel(name)          ~/.cloudflared/<tunnel-id>.json
            |
    TunnelConfig.write()         ~/.cloudflared/config.yml
            |
    route_dns(name, domain)      CNAME <domain> -> <tunnel-id>.cfargotunnel.com
            |
    install_service()            /etc/systemd/system/cloudflared.service
            |
    write_compose_override()     docker-compose.cloudflare.yml
            |
    check_public_endpoint()      GET https://<domain>/api/v1/status
            |
    update_env()                 CLOUDFLARE_DOMAIN / CLOUDFLARE_TUNNEL_ID

Sub-commands
------------
::

    setup          full flow above
    status         service state, tunnel list, tunnel info
    logs           follow the service journal
    restart        restart the service
    fix            re-route DNS and restart using the domain from .env
    cleanup        delete unused tunnels
    transfer-cert  copy cert.pem to a remote host over ssh/scp

Tunnel listings are read from ``cloudflared tunnel list -o json``.
"""

import argparse
import getpass
import json
import os
import platform
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

import requests
import yaml
from dotenv import load_dotenv

import env_file
from nightscout_api import DEFAULT_URL, NightscoutAPI
from ops_common import (
    _banner,
    _run,
    _stream,
    _succeeds,
    confirm,
    error,
    info,
    missing_commands,
    ok,
    poll_until,
    warn,
)

TUNNEL_DIR = Path.home() / ".cloudflared"
CONFIG_NAME = "config.yml"
CERT_NAME = "cert.pem"
DEFAULT_TUNNEL_NAME = "nightscout-tunnel"

SERVICE_NAME = "cloudflared"
SERVICE_FILE = Path("/etc/systemd/system/cloudflared.service")
BINARY_PATH = Path("/usr/local/bin/cloudflared")
COMPOSE_OVERRIDE = Path("docker-compose.cloudflare.yml")
COMPOSE_NETWORK = "nightscout_network"

RELEASE_API = "https://api.github.com/repos/cloudflare/cloudflared/releases/latest"
DOWNLOAD_URL = "https://github.com/cloudflare/cloudflared/releases/download/{version}/cloudflared-linux-{arch}"

# uname -m -> release asset suffix
ARCH_MAP = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
}

SERVICE_POLL_ATTEMPTS = 10
SERVICE_POLL_INTERVAL_S = 2
ENDPOINT_POLL_ATTEMPTS = 3
ENDPOINT_POLL_INTERVAL_S = 30

SERVICE_UNIT = """\
[Unit]
Description=Cloudflare Tunnel
After=network.target

[Service]
Type=simple
User={user}
ExecStart={binary} tunnel --config {config} run
Restart=always
RestartSec=5

[Install]
WantedBy=multi-user.target
"""


# ---------------------------------------------------------------------------
# Configuration record
# ---------------------------------------------------------------------------

@dataclass
class TunnelConfig:
    """The ``config.yml`` that ``cloudflared tunnel run`` reads.

    One ingress rule sends *domain* to *service_url*; everything else gets a
    404 from the edge.
    """

    tunnel_id: str
    domain: str
    credentials_file: Path
    service_url: str = DEFAULT_URL

    @classmethod
    def for_tunnel(cls, tunnel_id: str, domain: str,
                   tunnel_dir: Path = TUNNEL_DIR,
                   service_url: str = DEFAULT_URL) -> "TunnelConfig":
        return cls(tunnel_id, domain, tunnel_dir / f"{tunnel_id}.json", service_url)

    def to_dict(self) -> dict:
        return {
            "tunnel": self.tunnel_id,
            "credentials-file": str(self.credentials_file),
            "ingress": [
                {"hostname": self.domain, "service": self.service_url},
                {"service": "http_status:404"},
            ],
        }

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False)

    def write(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_yaml(), encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> "TunnelConfig":
        """Read a config written by :meth:`write`.

        Raises:
            ValueError: If the file has no hostname ingress rule.
        """
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        rules = [r for r in data.get("ingress", []) if "hostname" in r]
        if not rules:
            raise ValueError(f"No hostname ingress rule in {path}")
        return cls(
            tunnel_id=str(data.get("tunnel", "")),
            domain=rules[0]["hostname"],
            credentials_file=Path(data.get("credentials-file", "")),
            service_url=rules[0].get("service", DEFAULT_URL),
        )


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def tunnel_name_for(domain: str) -> str:
    """``ns.example.org`` -> ``ns-tunnel``."""
    return f"{domain.split('.')[0]}-tunnel"


def detect_arch(machine: str | None = None) -> str:
    """Map a ``uname -m`` value to the cloudflared release suffix.

    Raises:
        SystemExit: For an unsupported architecture.
    """
    machine = machine or platform.machine()
    try:
        return ARCH_MAP[machine.lower()]
    except KeyError:
        sys.exit(f"Unsupported architecture: {machine}")


def find_tunnel_id(tunnels: list[dict], name: str) -> str | None:
    for tunnel in tunnels:
        if tunnel.get("name") == name:
            return tunnel.get("id") or None
    return None


def tunnels_to_delete(tunnels: list[dict], requested: str, keep: str) -> list[str]:
    """Names selected for deletion.

    ``all`` selects every tunnel except *keep*; anything else is a
    whitespace-separated list of names taken as-is.
    """
    if requested.strip().lower() == "all":
        return [t["name"] for t in tunnels if t.get("name") and t["name"] != keep]
    return requested.split()


def render_service_unit(user: str, config_path: Path,
                        binary: Path = BINARY_PATH) -> str:
    return SERVICE_UNIT.format(user=user, binary=binary, config=config_path)


def compose_override(tunnel_dir: Path = TUNNEL_DIR) -> dict:
    """Compose override running cloudflared as a container next to Nightscout."""
    return {
        "services": {
            "cloudflared": {
                "image": "cloudflare/cloudflared:latest",
                "container_name": "nightscout_cloudflared",
                "restart": "unless-stopped",
                "command": f"tunnel run --config /etc/cloudflared/{CONFIG_NAME}",
                "volumes": [f"{tunnel_dir}:/etc/cloudflared"],
                "networks": [COMPOSE_NETWORK],
                "depends_on": ["nightscout"],
            }
        },
        "networks": {COMPOSE_NETWORK: {"external": True}},
    }


def write_compose_override(tunnel_dir: Path = TUNNEL_DIR,
                           path: Path = COMPOSE_OVERRIDE) -> Path:
    path.write_text(yaml.safe_dump(compose_override(tunnel_dir), sort_keys=False),
                    encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# cloudflared wrappers
# ---------------------------------------------------------------------------

def install_cloudflared(arch: str | None = None, dest: Path = BINARY_PATH) -> str:
    """Download the latest cloudflared release for *arch* into *dest*.

    Returns:
        The installed release tag.

    Raises:
        requests.HTTPError: If GitHub rejects a request.
        subprocess.CalledProcessError: If moving the binary into place fails.
    """
    arch = arch or detect_arch()
    resp = requests.get(RELEASE_API, timeout=30)
    resp.raise_for_status()
    version = resp.json()["tag_name"]

    info(f"Downloading cloudflared version {version}...")
    download = requests.get(DOWNLOAD_URL.format(version=version, arch=arch),
                            stream=True, timeout=120)
    download.raise_for_status()
    local = Path("cloudflared")
    with local.open("wb") as fh:
        for chunk in download.iter_content(chunk_size=1 << 16):
            fh.write(chunk)
    local.chmod(0o755)
    _run(["sudo", "mv", str(local), str(dest)], check=True)
    return version


def list_tunnels() -> list[dict]:
    """Parsed ``cloudflared tunnel list -o json``.

    Raises:
        subprocess.CalledProcessError: If cloudflared fails (e.g. no cert.pem).
    """
    result = _run(["cloudflared", "tunnel", "list", "-o", "json"], check=True, quiet=True)
    return json.loads(result.stdout or "[]") or []


def print_tunnels(tunnels: list[dict]) -> None:
    if not tunnels:
        print("  (no tunnels)")
    for tunnel in tunnels:
        print(f"  - {tunnel.get('name', 'N/A')} (ID: {tunnel.get('id', 'N/A')})")


def create_tunnel(name: str) -> None:
    _run(["cloudflared", "tunnel", "create", name], check=True)


def route_dns(name: str, domain: str) -> str:
    """Point *domain* at tunnel *name*.  Returns cloudflared's output."""
    result = _run(["cloudflared", "tunnel", "route", "dns", name, domain], check=True)
    return (result.stdout + result.stderr).strip()


def delete_tunnel(name: str) -> None:
    _run(["cloudflared", "tunnel", "delete", name], check=True)


def service_active() -> bool:
    return _succeeds(["systemctl", "is-active", "--quiet", SERVICE_NAME])


def _show_service_failure() -> None:
    info("Service status:")
    print(_run(["sudo", "systemctl", "status", SERVICE_NAME, "--no-pager", "-l"],
               quiet=True).stdout)
    info("Recent logs:")
    print(_run(["sudo", "journalctl", "-u", SERVICE_NAME, "--no-pager", "-n", "20"],
               quiet=True).stdout)


def start_service() -> bool:
    """Reload systemd, enable and start the service, wait until active."""
    _run(["sudo", "systemctl", "daemon-reload"], check=True)
    _run(["sudo", "systemctl", "enable", SERVICE_NAME], check=True)
    _run(["sudo", "systemctl", "start", SERVICE_NAME], check=True)
    return poll_until(service_active, SERVICE_POLL_ATTEMPTS,
                      SERVICE_POLL_INTERVAL_S, "cloudflared service")


def install_service(config_path: Path, user: str | None = None) -> None:
    """Write the systemd unit and start it.

    Raises:
        SystemExit: If the service does not become active.
    """
    unit = render_service_unit(user or getpass.getuser(), config_path)
    _run(["sudo", "tee", str(SERVICE_FILE)], input_text=unit, check=True)
    ok(f"Wrote {SERVICE_FILE}")
    try:
        active = start_service()
    except subprocess.CalledProcessError as exc:
        error(f"{' '.join(exc.cmd)} failed")
        active = False
    if not active:
        _show_service_failure()
        sys.exit("cloudflared service failed to start properly")
    ok("cloudflared service is running")


def check_public_endpoint(domain: str,
                          attempts: int = ENDPOINT_POLL_ATTEMPTS,
                          interval: float = ENDPOINT_POLL_INTERVAL_S) -> bool:
    """Poll ``https://<domain>/api/v1/status`` until it answers 200."""
    api = NightscoutAPI(f"https://{domain}")
    return poll_until(api.is_up, attempts, interval, f"https://{domain}")


def update_env(env_path: Path, domain: str, tunnel_id: str) -> bool:
    """Record the tunnel in the environment file.  False if the file is absent."""
    if not env_path.exists():
        warn(f"{env_path} not found. Run ns-setup first.")
        return False
    env_file.set_value(env_path, "CLOUDFLARE_DOMAIN", domain)
    env_file.set_value(env_path, "CLOUDFLARE_TUNNEL_ID", tunnel_id)
    ok(f"Updated {env_path} with Cloudflare tunnel information")
    return True


def transfer_cert(user: str, host: str, port: int = 22,
                  cert: Path = TUNNEL_DIR / CERT_NAME) -> None:
    """Copy the origin certificate to ``~/.cloudflared/`` on a remote host.

    Raises:
        SystemExit: If the local cert is missing or SSH is unreachable.
        subprocess.CalledProcessError: If a remote step fails.
    """
    if not cert.is_file():
        sys.exit(f"Cloudflare certificate not found at {cert}.\n"
                 "Authenticate first: cloudflared tunnel login")
    ok("Certificate file found")

    target = f"{user}@{host}"
    info("Testing SSH connection...")
    if not _succeeds(["ssh", "-p", str(port), "-o", "ConnectTimeout=10", target, "true"]):
        sys.exit("SSH connection failed! Check your SSH configuration and try again.")
    ok("SSH connection successful")

    _run(["ssh", "-p", str(port), target, "mkdir -p ~/.cloudflared"], check=True)
    _run(["scp", "-P", str(port), str(cert), f"{target}:~/.cloudflared/"], check=True)
    _run(["ssh", "-p", str(port), target, f"chmod 600 ~/.cloudflared/{CERT_NAME}"],
         check=True)
    ok("Certificate transfer completed successfully!")


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------

def _authenticate(tunnel_dir: Path, interactive: bool) -> None:
    cert = tunnel_dir / CERT_NAME
    if cert.exists():
        warn("You appear to be already authenticated with Cloudflare")
        if interactive and confirm("Re-authenticate?"):
            _stream(["cloudflared", "tunnel", "login"])
        return
    if interactive:
        print("  1. Browser authentication (opens browser) - Recommended")
        print("  2. Use a certificate copied from another machine")
        if input("  Enter choice (1 or 2): ").strip() == "2":
            if not cert.exists():
                error("Certificate file not found!")
                print(f"    Copy it first: ns-tunnel transfer-cert (target {cert})")
                sys.exit(1)
            return
    info("Opening browser authentication with Cloudflare...")
    _stream(["cloudflared", "tunnel", "login"])


def setup_tunnel(
    domain: str | None,
    tunnel_name: str | None = None,
    interactive: bool = True,
    env_path: Path = env_file.DEFAULT_ENV_PATH,
    tunnel_dir: Path = TUNNEL_DIR,
) -> TunnelConfig:
    """Install, authenticate, create, route and start a tunnel for *domain*.

    Raises:
        SystemExit: On any unrecoverable step.
    """
    _banner("Cloudflare Tunnel Setup for Nightscout")
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        sys.exit("Run this as a regular user, not as root")
    if not _succeeds(["docker", "info"]):
        sys.exit("Docker is not running. Start Docker and try again.")
    ok("Docker is running")

    if not domain:
        if not interactive:
            sys.exit("Domain is required in non-interactive mode. Use --domain.")
        domain = input("  Enter your domain (e.g., nightscout.yourdomain.com): ").strip()
        if not domain:
            sys.exit("Domain is required")
    tunnel_name = tunnel_name or tunnel_name_for(domain)
    print(f"  Domain:      {domain}")
    print(f"  Tunnel name: {tunnel_name}")

    if missing_commands(["cloudflared"]):
        info("Installing cloudflared...")
        try:
            version = install_cloudflared()
        except (requests.RequestException, subprocess.CalledProcessError) as exc:
            sys.exit(f"cloudflared installation failed: {exc}")
        ok(f"cloudflared {version} installed successfully")
    else:
        info("Using existing cloudflared installation")
    ok(f"cloudflared version: {_run(['cloudflared', 'version'], quiet=True).stdout.strip()}")

    tunnel_dir.mkdir(parents=True, exist_ok=True)
    _authenticate(tunnel_dir, interactive)

    try:
        tunnel_id = find_tunnel_id(list_tunnels(), tunnel_name)
        if tunnel_id:
            warn(f"Tunnel '{tunnel_name}' already exists, reusing it")
        else:
            info(f"Creating tunnel: {tunnel_name}")
            create_tunnel(tunnel_name)
            tunnels = list_tunnels()
            tunnel_id = find_tunnel_id(tunnels, tunnel_name)
            if not tunnel_id:
                error(f"Failed to extract tunnel ID for tunnel: {tunnel_name}")
                info("Available tunnels:")
                print_tunnels(tunnels)
                sys.exit(1)
    except subprocess.CalledProcessError as exc:
        sys.exit(f"cloudflared failed: {(exc.stderr or exc.stdout or '').strip()}")
    ok(f"Tunnel ID: {tunnel_id}")

    config = TunnelConfig.for_tunnel(tunnel_id, domain, tunnel_dir)
    config_path = tunnel_dir / CONFIG_NAME
    config.write(config_path)
    ok(f"Tunnel configuration written to {config_path}")

    try:
        output = route_dns(tunnel_name, domain)
    except subprocess.CalledProcessError as exc:
        error(f"Failed to route DNS to tunnel: {(exc.stderr or exc.stdout or '').strip()}")
        info("Check that the domain is managed by Cloudflare, that the account has "
             "permission, and that cert.pem is still valid.")
        sys.exit(1)
    ok("DNS routing configured successfully")
    if output:
        info(f"DNS output: {output}")

    install_service(config_path)
    write_compose_override(tunnel_dir)
    ok(f"Docker Compose override written to {COMPOSE_OVERRIDE}")

    if NightscoutAPI().is_up():
        ok("Nightscout is running locally")
        info("Testing tunnel connection (DNS propagation may take a few minutes)...")
        if check_public_endpoint(domain):
            ok(f"Tunnel connection test successful: https://{domain}")
        else:
            warn("Tunnel connection test failed; this is often DNS propagation delay")
            print(f"    Check later with: curl -I https://{domain}")
    else:
        warn("Nightscout is not running locally on port 8080; skipping tunnel test")

    update_env(env_path, domain, tunnel_id)

    _banner("Cloudflare Tunnel setup completed!")
    print(f"  Tunnel Name: {tunnel_name}")
    print(f"  Domain:      {domain}")
    print(f"  Tunnel ID:   {tunnel_id}")
    print(f"\n  Nightscout will be available at https://{domain}")
    return config


def cmd_setup(args) -> None:
    setup_tunnel(args.domain, args.tunnel_name, not args.non_interactive,
                 args.env_file, args.tunnel_dir)


def cmd_status(args) -> None:
    _banner("Cloudflare Tunnel Status")
    if service_active():
        ok("Tunnel service is running")
    else:
        error("Tunnel service is not running")
    config_path = args.tunnel_dir / CONFIG_NAME
    if config_path.exists():
        config = TunnelConfig.load(config_path)
        print(f"  Domain:    {config.domain}")
        print(f"  Tunnel ID: {config.tunnel_id}")
    print("\n  Tunnels:")
    try:
        print_tunnels(list_tunnels())
    except (FileNotFoundError, subprocess.CalledProcessError):
        warn("Could not list tunnels (is cloudflared installed and authenticated?)")
    if args.tunnel_name:
        result = _run(["cloudflared", "tunnel", "info", args.tunnel_name], quiet=True)
        print(result.stdout if result.returncode == 0 else "  Tunnel info not available")


def cmd_logs(args) -> None:
    _banner("Cloudflare Tunnel Logs")
    _stream(["sudo", "journalctl", "-u", SERVICE_NAME, "-f"])


def cmd_restart(args) -> None:
    _banner("Restarting Cloudflare Tunnel")
    _run(["sudo", "systemctl", "restart", SERVICE_NAME], check=True)
    ok("Tunnel restarted")


def cmd_fix(args) -> None:
    """Re-route DNS for an existing tunnel and (re)start the service."""
    _banner("Fixing Cloudflare Tunnel Setup")
    if not args.env_file.exists():
        sys.exit(f"{args.env_file} not found. Run ns-setup first.")
    domain = env_file.read_env(args.env_file).get("CLOUDFLARE_DOMAIN", "")
    if domain:
        ok(f"Found domain in {args.env_file}: {domain}")
    else:
        error(f"CLOUDFLARE_DOMAIN not found in {args.env_file}")
        domain = input("  Enter your domain (e.g., nightscout.yourdomain.com): ").strip()
        if not domain:
            sys.exit("Domain is required")

    info("Existing tunnels:")
    print_tunnels(list_tunnels())
    default_name = args.tunnel_name or tunnel_name_for(domain)
    name = input(f"  Tunnel name to use (Enter for '{default_name}'): ").strip() or default_name

    route_dns(name, domain)
    ok("DNS route configured")

    if not (args.tunnel_dir / CONFIG_NAME).exists():
        sys.exit("Tunnel configuration not found! Run 'setup' first.")
    if not start_service():
        _show_service_failure()
        sys.exit("Tunnel service failed to start")
    ok("Tunnel service is running")

    if check_public_endpoint(domain, attempts=1, interval=5):
        ok("Tunnel connection test successful!")
    else:
        warn("Tunnel connection test failed. DNS may not have propagated yet.")


def cmd_cleanup(args) -> None:
    _banner("Cloudflare Tunnel Cleanup")
    tunnels = list_tunnels()
    info("Current tunnels:")
    print_tunnels(tunnels)
    warn("This will permanently delete tunnels!")

    requested = args.tunnels or input(
        f"  Tunnel names to delete (space-separated, or 'all' except '{args.keep}'): ")
    names = tunnels_to_delete(tunnels, requested, args.keep)
    if not names:
        info("No tunnels to delete")
        return
    warn("The following tunnels will be deleted:")
    for name in names:
        print(f"    - {name}")
    if not args.yes and not confirm("Delete these tunnels?"):
        info("Cleanup cancelled.")
        return
    for name in names:
        delete_tunnel(name)
        ok(f"Deleted tunnel: {name}")
    info("Remaining tunnels:")
    print_tunnels(list_tunnels())


def cmd_transfer_cert(args) -> None:
    _banner("Cloudflare Certificate Transfer")
    user = args.user or input("  Remote username: ").strip()
    host = args.host or input("  Remote hostname/IP: ").strip()
    if not user or not host:
        sys.exit("Remote username and host are required")
    transfer_cert(user, host, args.port, args.tunnel_dir / CERT_NAME)
    print("\n  Next steps:")
    print(f"    1. ssh {user}@{host}")
    print("    2. Run: ns-tunnel setup --domain <domain>")
    print("    3. Choose option 2 (use a certificate from another machine)")


def main(argv: list[str] | None = None) -> None:
    """Entry point for ``ns-tunnel``."""
    load_dotenv()
    parser = argparse.ArgumentParser(description="Manage the Nightscout Cloudflare Tunnel")
    parser.add_argument("--tunnel-dir", type=Path, default=TUNNEL_DIR,
                        help="cloudflared directory (default: ~/.cloudflared)")
    parser.add_argument("--env-file", type=Path, default=env_file.DEFAULT_ENV_PATH,
                        help="Nightscout environment file (default: .env)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("setup", help="Install and configure a tunnel")
    p.add_argument("--domain", help="Public hostname, e.g. ns.example.org")
    p.add_argument("--tunnel-name", help="Tunnel name (default: <first label>-tunnel)")
    p.add_argument("--non-interactive", action="store_true",
                   help="Never prompt; requires --domain and existing auth")
    p.set_defaults(func=cmd_setup)

    p = sub.add_parser("status", help="Show tunnel status")
    p.add_argument("--tunnel-name", help="Also show 'cloudflared tunnel info' for it")
    p.set_defaults(func=cmd_status)

    sub.add_parser("logs", help="Follow the tunnel service logs").set_defaults(func=cmd_logs)
    sub.add_parser("restart", help="Restart the tunnel service").set_defaults(func=cmd_restart)

    p = sub.add_parser("fix", help="Re-route DNS and restart using .env")
    p.add_argument("--tunnel-name", help="Tunnel to route (default: from domain)")
    p.set_defaults(func=cmd_fix)

    p = sub.add_parser("cleanup", help="Delete unused tunnels")
    p.add_argument("--tunnels", help="Space-separated names, or 'all'")
    p.add_argument("--keep", default=DEFAULT_TUNNEL_NAME,
                   help="Tunnel kept by 'all' (default: nightscout-tunnel)")
    p.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    p.set_defaults(func=cmd_cleanup)

    p = sub.add_parser("transfer-cert", help="Copy cert.pem to a remote host")
    p.add_argument("--user", help="Remote username")
    p.add_argument("--host", help="Remote hostname or IP")
    p.add_argument("--port", type=int, default=22, help="SSH port (default: 22)")
    p.set_defaults(func=cmd_transfer_cert)

    args = parser.parse_args(argv)
    try:
        args.func(args)
    except subprocess.CalledProcessError as exc:
        detail = (exc.stderr or exc.stdout or "").strip()
        sys.exit(f"Command failed: {' '.join(exc.cmd)}\n{detail}")


if __name__ == "__main__":
    main()
