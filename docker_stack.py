"""Docker / Docker Compose wrappers for the two-service Nightscout stack.

The stack (``docker-compose.yml``) has two services:

    nightscout  container ``nightscout``,        port 8080 -> 1337
    mongo       container ``nightscout_mongo``,  no published port

Because MongoDB is not published on the host, every database operation
that the orchestrator and backup scripts run against the local instance
goes through ``docker compose exec -T mongo ...``.

Both the Compose v2 plugin (``docker compose``) and the standalone v1
binary (``docker-compose``) are supported; :func:`compose_command` picks
whichever is installed.
"""

import json
from functools import lru_cache
from pathlib import Path

from nightscout_api import NightscoutAPI
from ops_common import _run, _succeeds, missing_commands, poll_until

NIGHTSCOUT_SERVICE = "nightscout"
MONGO_SERVICE = "mongo"
NIGHTSCOUT_CONTAINER = "nightscout"
MONGO_CONTAINER = "nightscout_mongo"
MONGO_ROOT_USER = "root"

# mongo:4.4 ships only the legacy shell; newer images ship mongosh.
MONGO_SHELLS = ("mongosh", "mongo")

MONGO_POLL_ATTEMPTS = 30
MONGO_POLL_INTERVAL_S = 2
NIGHTSCOUT_POLL_ATTEMPTS = 30
NIGHTSCOUT_POLL_INTERVAL_S = 5


@lru_cache(maxsize=1)
def compose_command() -> tuple[str, ...]:
    """Return the Compose invocation prefix, or ``()`` if neither flavour exists."""
    if not missing_commands(["docker"]) and _succeeds(["docker", "compose", "version"]):
        return ("docker", "compose")
    if not missing_commands(["docker-compose"]):
        return ("docker-compose",)
    return ()


def compose(*args: str, check: bool = True, quiet: bool = False):
    """Run ``docker compose <args>`` in the current directory.

    Raises:
        SystemExit: If Docker Compose is not installed.
        subprocess.CalledProcessError: If *check* and the command fails.
    """
    prefix = compose_command()
    if not prefix:
        raise SystemExit("Docker Compose is not available. Install it and try again.")
    return _run([*prefix, *args], check=check, quiet=quiet)


def docker_running() -> bool:
    return _succeeds(["docker", "info"])


def running_containers() -> list[str]:
    """Names of running containers (empty if Docker is unavailable)."""
    try:
        result = _run(["docker", "ps", "--format", "{{.Names}}"], quiet=True)
    except FileNotFoundError:
        return []
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def container_running(name: str) -> bool:
    return name in running_containers()


def parse_compose_ps(text: str) -> list[dict]:
    """Parse ``docker compose ps --format json`` output.

    Compose < 2.21 prints one JSON array; newer releases print one JSON
    object per line.  Both shapes are accepted.
    """
    text = text.strip()
    if not text:
        return []
    if text.startswith("["):
        return json.loads(text)
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def service_states() -> dict[str, str]:
    """Map Compose service name -> state (``running``, ``exited``, ...)."""
    if not compose_command():
        return {}
    result = compose("ps", "--all", "--format", "json", check=False, quiet=True)
    if result.returncode != 0:
        return {}
    return {
        svc.get("Service", svc.get("Name", "")): svc.get("State", "").lower()
        for svc in parse_compose_ps(result.stdout)
    }


def services_up() -> bool:
    """True if at least one service of the stack is running."""
    return "running" in service_states().values()


# ---------------------------------------------------------------------------
# MongoDB inside the container
# ---------------------------------------------------------------------------

def mongo_auth_args(password: str | None) -> list[str]:
    if not password:
        return []
    return [
        "--username", MONGO_ROOT_USER,
        "--password", password,
        "--authenticationDatabase", "admin",
    ]


def mongo_shell_eval(js: str, password: str | None = None,
                     database: str = "admin") -> str | None:
    """Evaluate *js* with the shell inside the mongo container.

    Tries ``mongosh`` first and falls back to the legacy ``mongo`` shell.

    Returns:
        Stripped stdout of the first shell that succeeds, or None.
    """
    for shell in MONGO_SHELLS:
        result = compose(
            "exec", "-T", MONGO_SERVICE, shell, "--quiet",
            *mongo_auth_args(password), database, "--eval", js,
            check=False, quiet=True,
        )
        if result.returncode == 0:
            return result.stdout.strip()
    return None


def mongo_ping(password: str | None = None) -> bool:
    return mongo_shell_eval("db.adminCommand('ping').ok", password) is not None


def count_documents(collection: str, database: str,
                    password: str | None = None) -> int | None:
    """Document count of *collection* via the container shell; None on failure."""
    out = mongo_shell_eval(
        f"db.getCollection('{collection}').countDocuments({{}})", password, database)
    if out is None:
        return None
    try:
        return int(out.splitlines()[-1])
    except (ValueError, IndexError):
        return None


def wait_for_mongo(password: str | None = None,
                   attempts: int = MONGO_POLL_ATTEMPTS,
                   interval: float = MONGO_POLL_INTERVAL_S) -> bool:
    return poll_until(lambda: mongo_ping(password), attempts, interval, "MongoDB")


def wait_for_nightscout(api: NightscoutAPI,
                        attempts: int = NIGHTSCOUT_POLL_ATTEMPTS,
                        interval: float = NIGHTSCOUT_POLL_INTERVAL_S) -> bool:
    return poll_until(api.is_up, attempts, interval, "Nightscout health")


def copy_into_container(src: Path, container: str, dest: str) -> None:
    """``docker cp`` *src* to *container*:*dest*.

    Raises:
        subprocess.CalledProcessError: If the copy fails.
    """
    _run(["docker", "cp", str(src), f"{container}:{dest}"], check=True)


def copy_from_container(container: str, src: str, dest: Path) -> None:
    _run(["docker", "cp", f"{container}:{src}", str(dest)], check=True)


def restore_in_container(
    container_dir: str,
    database: str,
    password: str | None = None,
    drop: bool = True,
    oplog: bool = False,
) -> None:
    """Run ``mongorestore`` inside the mongo container against a copied dump.

    Args:
        container_dir: Dump directory inside the container.  With *oplog*
            this is the dump root (containing ``oplog.bson``), otherwise the
            per-database directory.
        database: Target database name.
        password: Root password; omitted from the command when empty.
        drop: Drop each collection before restoring it.
        oplog: Replay ``oplog.bson``.

    Raises:
        subprocess.CalledProcessError: If ``mongorestore`` fails.
    """
    cmd = ["exec", "-T", MONGO_SERVICE, "mongorestore", *mongo_auth_args(password)]
    if oplog:
        cmd += ["--oplogReplay", f"--nsInclude={database}.*"]
    else:
        cmd += [f"--db={database}"]
    if drop:
        cmd.append("--drop")
    cmd.append(container_dir)
    compose(*cmd)
