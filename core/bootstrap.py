import logging
import secrets
import string
import subprocess
import tempfile
from pathlib import Path
from typing import List, Tuple

import bcrypt
import yaml

from config.settings import BOOTSTRAP_DIR, PASSWORD_LENGTH, VM_SSH_USERNAME
from core.errors import BootstrapError
from core.logger import EventSink, log_event
from core.models import BootstrapConfig

LOWERCASE = string.ascii_lowercase
UPPERCASE = string.ascii_uppercase
DIGITS = string.digits
SYMBOLS = "!@#$%^&*()"
ALPHABET = LOWERCASE + UPPERCASE + DIGITS + SYMBOLS

GUEST_PACKAGES = ["qemu-guest-agent", "openssh-server"]

_rng = secrets.SystemRandom()


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """
    Random password with at least one lowercase letter, uppercase letter,
    digit and symbol. The mandatory characters are shuffled in with the rest
    so their positions are not predictable.
    """
    if length < 4:
        raise ValueError("password length must be at least 4")

    chars = [secrets.choice(pool) for pool in (LOWERCASE, UPPERCASE, DIGITS, SYMBOLS)]
    chars += [secrets.choice(ALPHABET) for _ in range(length - 4)]
    _rng.shuffle(chars)
    return "".join(chars)


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def render_meta_data(instance_id: str, hostname: str) -> str:
    return f"instance-id: {instance_id}\nlocal-hostname: {hostname}\n"


def render_user_data(hostname: str, username: str, password: str) -> str:
    user = {
        "name": username,
        "sudo": ["ALL=(ALL) NOPASSWD:ALL"],
        "groups": "sudo",
        "shell": "/bin/bash",
        "lock_passwd": False,
        "passwd": hash_password(password),
    }
    cfg = {
        "hostname": hostname,
        "manage_etc_hosts": True,
        "users": [user],
        "disable_root": True,
        "package_update": True,
        "package_upgrade": False,
        "packages": list(GUEST_PACKAGES),
        "ssh_pwauth": True,
        "ssh_authorized_keys": [],
        "runcmd": [
            ["systemctl", "enable", "qemu-guest-agent"],
            ["systemctl", "start", "qemu-guest-agent"],
        ],
        "final_message": "The system is finally up, after $UPTIME seconds",
    }
    return "#cloud-config\n" + yaml.safe_dump(cfg, sort_keys=False, default_flow_style=False)


def genisoimage_command(output: Path, files: List[Path]) -> List[str]:
    return [
        "genisoimage",
        "-output",
        str(output),
        "-volid",
        "cidata",
        "-joliet",
        "-rock",
        *[str(f) for f in files],
    ]


class BootstrapGenerator:
    """
    Builds the cloud-init NoCloud seed (user-data + meta-data) for a new
    machine and packs it into a read-only ISO the guest sees as a CD-ROM.
    """

    def __init__(
        self,
        output_dir: Path = BOOTSTRAP_DIR,
        username: str = VM_SSH_USERNAME,
        password_length: int = PASSWORD_LENGTH,
        log: EventSink = log_event,
    ) -> None:
        self.output_dir = Path(output_dir)
        self.username = username
        self.password_length = password_length
        self._log = log

    def iso_path(self, name: str) -> Path:
        return self.output_dir / f"{name}-cloud-init.iso"

    def generate(self, name: str) -> Tuple[BootstrapConfig, Path]:
        password = generate_password(self.password_length)
        config = BootstrapConfig(
            hostname=name,
            username=self.username,
            password=password,
            user_data=render_user_data(name, self.username, password),
            meta_data=render_meta_data(name, name),
        )

        iso = self.iso_path(name)
        self._log(f"[bootstrap] Creating cloud-init ISO for VM {name} at {iso}")
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BootstrapError(f"Cannot create bootstrap directory {self.output_dir}: {e}") from e

        with tempfile.TemporaryDirectory(prefix=f"cloud-init-{name}-") as tmp:
            user_data = Path(tmp) / "user-data"
            meta_data = Path(tmp) / "meta-data"
            user_data.write_text(config.user_data, encoding="utf-8")
            meta_data.write_text(config.meta_data, encoding="utf-8")
            self._package(name, genisoimage_command(iso, [user_data, meta_data]))

        self._log(f"[bootstrap] cloud-init ISO ready for VM {name}")
        return config, iso

    def _package(self, name: str, cmd: List[str]) -> None:
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as e:
            self._log(f"[bootstrap] genisoimage not found: {e}", logging.ERROR)
            raise BootstrapError(f"genisoimage not found: {e}", vm_name=name) from e

        if result.returncode != 0:
            combined = "\n".join(
                part for part in [(result.stderr or "").strip(), (result.stdout or "").strip()] if part
            ) or "unknown error"
            self._log(f"[bootstrap] genisoimage FAILED for VM {name}: {combined}", logging.ERROR)
            raise BootstrapError(
                f"Failed to package cloud-init ISO for VM '{name}': {combined}",
                vm_name=name,
                returncode=result.returncode,
            )
