import logging
import subprocess
from pathlib import Path
from typing import List, Optional

from config.settings import BASE_IMAGE_PATH, DISK_FORMAT, VM_IMAGES_ROOT
from core.errors import StorageError
from core.logger import EventSink, log_event
from core.models import StorageVolume

GIB = 1024 ** 3


def qemu_img_command(path: Path, size_gb: int, base_image: Optional[Path] = None) -> List[str]:
    """
    Build the qemu-img invocation for a new disk. With a base image the disk
    is a copy-on-write overlay on top of it, otherwise an empty image.
    """
    cmd = ["qemu-img", "create", "-f", DISK_FORMAT]
    if base_image is not None:
        cmd += ["-F", DISK_FORMAT, "-b", str(base_image)]
    cmd += [str(path), f"{size_gb}G"]
    return cmd


class StorageProvisioner:
    """
    Creates one qcow2 disk per machine under ``image_root``.

    When the shared base image is missing the disk is created empty, which
    leaves the guest without an OS; that degraded mode is logged as a warning.
    """

    def __init__(
        self,
        image_root: Path = VM_IMAGES_ROOT,
        base_image: Path = BASE_IMAGE_PATH,
        log: EventSink = log_event,
    ) -> None:
        self.image_root = Path(image_root)
        self.base_image = Path(base_image)
        self._log = log

    def volume_path(self, name: str) -> Path:
        return self.image_root / f"{name}.{DISK_FORMAT}"

    def provision(self, name: str, size_gb: int) -> StorageVolume:
        path = self.volume_path(name)
        if path.exists():
            raise StorageError(str(path), "image already exists")

        if self.base_image.exists():
            backing: Optional[Path] = self.base_image
            self._log(f"[storage] Creating disk {path} ({size_gb}G) backed by {backing}")
        else:
            backing = None
            self._log(
                f"[storage] Base image not found at {self.base_image}; creating EMPTY disk "
                f"{path} ({size_gb}G) without an operating system",
                logging.WARNING,
            )

        self.image_root.mkdir(parents=True, exist_ok=True)
        self._run(qemu_img_command(path, size_gb, backing), path)

        self._log(f"[storage] Disk ready at {path}")
        return StorageVolume(
            name=path.name,
            path=str(path),
            capacity_bytes=size_gb * GIB,
            backing_image=str(backing) if backing is not None else None,
        )

    def _run(self, cmd: List[str], path: Path) -> None:
        self._log(f"[storage] Running: {' '.join(cmd)}", logging.DEBUG)
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as e:
            self._log(f"[storage] qemu-img not found: {e}", logging.ERROR)
            raise StorageError(str(path), f"qemu-img not found: {e}") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            stdout = (result.stdout or "").strip()
            combined = "\n".join(part for part in [stderr, stdout] if part) or "unknown error"
            self._log(f"[storage] qemu-img FAILED for {path} (rc={result.returncode}): {combined}", logging.ERROR)
            raise StorageError(
                str(path),
                combined,
                returncode=result.returncode,
                stdout=stdout,
                stderr=stderr,
            )
