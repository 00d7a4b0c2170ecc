#!/usr/bin/env python3
"""Tear down a Nightscout deployment so the host is ready for a fresh setup.

Removes, in order: the Compose stack and its volumes, any remaining
Docker volumes / networks / images whose name contains ``nightscout``,
dangling Docker resources, the generated ``.env`` and Compose override,
and the cloudflared systemd service.  The tunnel directory
(``~/.cloudflared``) and the cloudflared binary are only removed when
asked for.

ALL DATABASE CONTENTS ARE DELETED.  Take a backup first (``ns-backup``).
"""

import argparse
import shutil
import sys
from pathlib import Path

from dotenv import load_dotenv

import env_file
from cloudflare_tunnel import (
    BINARY_PATH,
    COMPOSE_OVERRIDE,
    SERVICE_FILE,
    SERVICE_NAME,
    TUNNEL_DIR,
    service_active,
)
from docker_stack import compose, compose_command
from ops_common import _banner, _run, confirm, info, ok, warn

MATCH = "nightscout"


def matching(names: list[str], needle: str = MATCH) -> list[str]:
    return [n for n in names if needle in n]


def _list(cmd: list[str]) -> list[str]:
    result = _run(cmd, quiet=True)
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _remove(kind: str, list_cmd: list[str], rm_cmd: list[str]) -> None:
    names = matching(_list(list_cmd))
    if not names:
        info(f"No Nightscout {kind} found")
        return
    result = _run([*rm_cmd, *names])
    if result.returncode == 0:
        ok(f"{kind.capitalize()} removed: {', '.join(names)}")
    else:
        warn(f"Some {kind} could not be removed: {result.stderr.strip()}")


def remove_docker_resources() -> None:
    info("Stopping and removing containers...")
    if matching(_list(["docker", "ps", "-a", "--format", "{{.Names}}"])) and compose_command():
        compose("down", "-v", check=False)
        ok("Containers stopped and removed")
    else:
        info("No Nightscout containers found")

    _remove("volumes", ["docker", "volume", "ls", "--format", "{{.Name}}"],
            ["docker", "volume", "rm"])
    _remove("networks", ["docker", "network", "ls", "--format", "{{.Name}}"],
            ["docker", "network", "rm"])
    _remove("images", ["docker", "images", "--format", "{{.Repository}}:{{.Tag}}"],
            ["docker", "rmi"])

    info("Cleaning up dangling resources...")
    _run(["docker", "system", "prune", "-f"])
    ok("Dangling resources cleaned")


def remove_generated_files(env_path: Path, override: Path = COMPOSE_OVERRIDE) -> list[Path]:
    removed = []
    for path in (env_path, override):
        if path.exists():
            path.unlink()
            removed.append(path)
    ok("Configuration files removed")
    return removed


def remove_service() -> None:
    if service_active():
        _run(["sudo", "systemctl", "stop", SERVICE_NAME])
        _run(["sudo", "systemctl", "disable", SERVICE_NAME])
        ok("cloudflared service stopped and disabled")
    else:
        info("cloudflared service not running")
    if SERVICE_FILE.exists():
        _run(["sudo", "rm", str(SERVICE_FILE)])
        _run(["sudo", "systemctl", "daemon-reload"])
        ok("cloudflared service file removed")


def _decide(flag: bool, assume_yes: bool, question: str) -> bool:
    if flag:
        return True
    if assume_yes:
        return False
    return confirm(question)


def main(argv: list[str] | None = None) -> None:
    """Entry point for ``ns-cleanup``."""
    load_dotenv()
    parser = argparse.ArgumentParser(description="Remove a Nightscout deployment")
    parser.add_argument("--env-file", type=Path, default=env_file.DEFAULT_ENV_PATH,
                        help="Environment file to delete (default: .env)")
    parser.add_argument("--tunnel-dir", type=Path, default=TUNNEL_DIR,
                        help="cloudflared directory (default: ~/.cloudflared)")
    parser.add_argument("--remove-tunnel-config", action="store_true",
                        help="Also delete the cloudflared directory")
    parser.add_argument("--remove-binary", action="store_true",
                        help="Also delete the cloudflared binary")
    parser.add_argument("--yes", action="store_true",
                        help="Do not ask; keep anything not explicitly requested")
    args = parser.parse_args(argv)

    _banner("Nightscout Cleanup")
    warn("This will remove ALL Nightscout containers, volumes, and data!")
    warn("This action cannot be undone!")
    if not args.yes and not confirm("Are you sure you want to continue?"):
        sys.exit("Cleanup cancelled.")

    if shutil.which("docker"):
        remove_docker_resources()
    else:
        warn("Docker is not installed; skipping container cleanup")
    remove_generated_files(args.env_file)

    if args.tunnel_dir.is_dir():
        warn(f"Cloudflare tunnel configuration found at {args.tunnel_dir}")
        if _decide(args.remove_tunnel_config, args.yes,
                   "Remove Cloudflare tunnel configuration?"):
            shutil.rmtree(args.tunnel_dir)
            ok("Cloudflare tunnel configuration removed")
        else:
            info("Cloudflare tunnel configuration preserved")

    remove_service()

    if BINARY_PATH.exists():
        warn(f"cloudflared binary found at {BINARY_PATH}")
        if _decide(args.remove_binary, args.yes, "Remove cloudflared binary?"):
            _run(["sudo", "rm", str(BINARY_PATH)])
            ok("cloudflared binary removed")
        else:
            info("cloudflared binary preserved")

    _banner("Cleanup completed successfully!")
    print("  Next steps:")
    print("    1. ns-setup                        configure Nightscout")
    print("    2. ns-tunnel setup --domain ...    set up the Cloudflare Tunnel")
    print("    3. docker compose up -d            start the services")


if __name__ == "__main__":
    main()
