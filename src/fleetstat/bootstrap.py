"""
Credential bootstrap for Fleetstat.

Generates a dedicated key pair once and installs its public key into each
host's ``~/.ssh/authorized_keys``, so later sessions can use that key.
"""

from __future__ import annotations

import dataclasses
import logging
import shlex
from pathlib import Path

import paramiko

from fleetstat.errors import BootstrapError, CommandError, FleetstatError
from fleetstat.session import SessionManager
from fleetstat.targets import HostTarget

logger = logging.getLogger(__name__)

DEFAULT_KEY_BITS = 4096


def public_key_path(private_path: str | Path) -> Path:
    private_path = Path(private_path)
    return private_path.with_name(private_path.name + ".pub")


def ensure_keypair(private_path: str | Path, bits: int = DEFAULT_KEY_BITS) -> str:
    """
    Make sure the bootstrap key pair exists and return the public key line.

    If neither file exists a new RSA key is generated. If only one of the
    two files exists, nothing is touched and an error is raised.

    Raises:
        BootstrapError: If the pair is incomplete or cannot be written.
    """
    private_path = Path(private_path)
    pub_path = public_key_path(private_path)
    has_private = private_path.exists()
    has_public = pub_path.exists()

    if has_private and has_public:
        try:
            return pub_path.read_text().strip()
        except OSError as e:
            raise BootstrapError(f"{pub_path} could not be read: {e}") from e

    if has_private:
        raise BootstrapError(
            f"{private_path} exists but {pub_path} does not. Either put {pub_path.name} "
            f"back or remove {private_path.name} and rerun bootstrap"
        )
    if has_public:
        raise BootstrapError(
            f"{pub_path} exists but {private_path} does not. Either put {private_path.name} "
            f"back or remove {pub_path.name} and rerun bootstrap"
        )

    logger.info(f"Generating {bits}-bit RSA bootstrap key at {private_path}")
    try:
        key = paramiko.RSAKey.generate(bits)
        private_path.parent.mkdir(parents=True, exist_ok=True)
        key.write_private_key_file(str(private_path))
        public_line = f"{key.get_name()} {key.get_base64()}"
        pub_path.write_text(public_line + "\n")
        pub_path.chmod(0o644)
    except (OSError, paramiko.SSHException, ValueError) as e:
        raise BootstrapError(f"Bootstrapping failed: {e}") from e

    return public_line


def authorize_key(manager: SessionManager, target: HostTarget, public_key: str) -> bool:
    """
    Install a public key on a host unless it is already authorized.

    Returns:
        True if the key was added, False if it was already present.

    Raises:
        ConnectError: If the host cannot be reached with the current identity.
        CommandError: If the key could not be appended.
    """
    quoted = shlex.quote(public_key.strip())

    with manager.session(target) as session:
        try:
            manager.run(session, f"grep -qF {quoted} ~/.ssh/authorized_keys")
            logger.info(f"[{target.hostname}] Bootstrap key already authorized")
            return False
        except CommandError:
            pass

        logger.info(f"[{target.hostname}] Adding bootstrap key to ~/.ssh/authorized_keys")
        manager.run(session, "mkdir -p ~/.ssh && chmod 700 ~/.ssh")
        manager.run(
            session,
            f"echo {quoted} >> ~/.ssh/authorized_keys && chmod 600 ~/.ssh/authorized_keys",
        )
        return True


@dataclasses.dataclass
class BootstrapResult:
    """Outcome of installing the bootstrap key on one host."""

    target: HostTarget
    key_file: str
    error: FleetstatError | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def next_target(self) -> HostTarget:
        """The target to connect with afterwards."""
        if not self.success:
            return self.target
        return dataclasses.replace(self.target, identity_file=self.key_file)


def bootstrap_hosts(
    manager: SessionManager,
    targets: list[HostTarget],
    private_path: str | Path,
    bits: int = DEFAULT_KEY_BITS,
) -> list[BootstrapResult]:
    """
    Authorize the bootstrap key on every target.

    Returns:
        One result per target, in target order.

    Raises:
        BootstrapError: If the key pair itself is unusable.
    """
    public_key = ensure_keypair(private_path, bits)
    key_file = str(Path(private_path))

    results = []
    for target in targets:
        result = BootstrapResult(target=target, key_file=key_file)
        try:
            authorize_key(manager, target, public_key)
        except FleetstatError as e:
            logger.error(f"[{target.hostname}] Could not bootstrap {target.address}: {e}")
            result.error = e
        results.append(result)
    return results


def bootstrap_targets(
    manager: SessionManager,
    targets: list[HostTarget],
    private_path: str | Path,
    bits: int = DEFAULT_KEY_BITS,
) -> list[HostTarget]:
    """
    Authorize the bootstrap key and return the targets to use from now on.

    Hosts that were bootstrapped get the bootstrap key as identity file,
    hosts that failed keep their original target.
    """
    return [r.next_target for r in bootstrap_hosts(manager, targets, private_path, bits)]
