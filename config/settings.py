import os
from pathlib import Path

# -----------------------------
# Base paths
# -----------------------------
BASE_DIR = Path(__file__).resolve().parent.parent  # project root

# -----------------------------
# VM image storage
# -----------------------------
# Created lazily by the storage/bootstrap components, the default lives under
# the libvirt image root which normally needs root to write.
VM_IMAGES_ROOT = Path(os.getenv("VM_IMAGES_ROOT", "/var/lib/libvirt/images"))

# shared base image used as copy-on-write backing store
BASE_IMAGE_PATH = Path(
    os.getenv(
        "BASE_IMAGE_PATH",
        str(VM_IMAGES_ROOT / "ubuntu-22.04-server-cloudimg-amd64.img"),
    )
)

DISK_FORMAT = "qcow2"

# cloud-init ISOs
BOOTSTRAP_DIR = Path(os.getenv("BOOTSTRAP_DIR", str(VM_IMAGES_ROOT / "cloud-init")))

# -----------------------------
# Logging
# -----------------------------
LOG_DIR = Path(os.getenv("LOG_DIR", str(BASE_DIR / "log")))
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = LOG_DIR / "vm-provisioner.log"

# -----------------------------
# VM defaults / bounds
# -----------------------------
DEFAULT_CPU = int(os.getenv("VM_DEFAULT_CPU", "2"))
DEFAULT_MEMORY_MB = int(os.getenv("VM_DEFAULT_MEMORY_MB", "2048"))
DEFAULT_DISK_GB = int(os.getenv("VM_DEFAULT_DISK_GB", "20"))

MIN_CPU, MAX_CPU = 1, 16
MIN_MEMORY_MB, MAX_MEMORY_MB = 512, 32768
MIN_DISK_GB, MAX_DISK_GB = 10, 1000
MAX_NAME_LENGTH = 50

# -----------------------------
# Hypervisor / libvirt
# -----------------------------
# common examples:
#   qemu:///system                  (KVM/QEMU on host)
#   qemu+ssh://root@host/system     (remote KVM host)
LIBVIRT_URI = os.getenv("LIBVIRT_URI", "qemu:///system")

# 'kvm' needs hardware acceleration, 'qemu' works everywhere (slow)
VM_DOMAIN_TYPE = os.getenv("VM_DOMAIN_TYPE", "kvm").lower()
VM_EMULATOR = os.getenv("VM_EMULATOR", "/usr/bin/qemu-system-x86_64")

# -----------------------------
# Tenant networks
# -----------------------------
# each tenant gets <prefix>.<vlan>.0/24
TENANT_SUBNET_PREFIX = os.getenv("TENANT_SUBNET_PREFIX", "192.168")

# -----------------------------
# SSH / remote access
# -----------------------------
VM_SSH_PORT = int(os.getenv("VM_SSH_PORT", "22"))
VM_SSH_USERNAME = os.getenv("VM_SSH_USERNAME", "ubuntu")

SSH_READY_TIMEOUT = float(os.getenv("SSH_READY_TIMEOUT", "60"))
SSH_READY_INTERVAL = float(os.getenv("SSH_READY_INTERVAL", "2"))
SSH_CONNECT_TIMEOUT = float(os.getenv("SSH_CONNECT_TIMEOUT", "5"))

PASSWORD_LENGTH = int(os.getenv("VM_PASSWORD_LENGTH", "16"))

# -----------------------------
# Metrics / monitoring
# -----------------------------
METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"

# -----------------------------
# Misc
# -----------------------------
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
