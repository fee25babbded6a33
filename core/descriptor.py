import logging
import secrets
import uuid
from typing import Optional

from config.settings import DISK_FORMAT, VM_DOMAIN_TYPE, VM_EMULATOR
from core.errors import DescriptorError
from core.logger import EventSink, log_event
from core.models import MachineDescriptor, MachineRecord
from core.segments import network_name_for

# locally administered, unicast (bit 1 set, bit 0 clear)
MAC_FIRST_OCTET = 0x52

KIB_PER_MB = 1024


def generate_uuid() -> str:
    return str(uuid.uuid4())


def generate_mac_address() -> str:
    octets = [MAC_FIRST_OCTET] + list(secrets.token_bytes(5))
    return ":".join(f"{octet:02x}" for octet in octets)


def memory_mb_to_kib(memory_mb: int) -> int:
    return memory_mb * KIB_PER_MB


class DescriptorBuilder:
    """
    Renders the libvirt domain XML for a machine record.

    Fresh UUID and MAC on every call; uniqueness is probabilistic and not
    checked against existing domains.
    """

    def __init__(
        self,
        domain_type: str = VM_DOMAIN_TYPE,
        emulator: str = VM_EMULATOR,
        log: EventSink = log_event,
    ) -> None:
        self.domain_type = domain_type
        self.emulator = emulator
        self._log = log

    def build(
        self,
        record: MachineRecord,
        volume_path: str,
        bootstrap_path: Optional[str] = None,
    ) -> MachineDescriptor:
        try:
            network_name = network_name_for(record.tenant)
        except (KeyError, ValueError) as e:
            raise DescriptorError(
                f"Invalid tenant for network configuration: {record.tenant}",
                vm_name=record.name,
                tenant=record.tenant,
            ) from e

        vm_uuid = generate_uuid()
        mac = generate_mac_address()
        memory_kib = memory_mb_to_kib(record.memory)

        xml = self._domain_xml(
            name=record.name,
            vm_uuid=vm_uuid,
            memory_kib=memory_kib,
            vcpus=record.cpu,
            disk_path=str(volume_path),
            bootstrap_path=str(bootstrap_path) if bootstrap_path else None,
            network_name=network_name,
            mac=mac,
        )

        self._log(
            f"[descriptor] Built domain XML for {record.name}: uuid={vm_uuid}, mac={mac}, "
            f"memory={memory_kib}KiB, network={network_name}",
            logging.DEBUG,
        )
        return MachineDescriptor(
            name=record.name,
            uuid=vm_uuid,
            mac_address=mac,
            network_name=network_name,
            memory_kib=memory_kib,
            xml=xml,
        )

    def _domain_xml(
        self,
        name: str,
        vm_uuid: str,
        memory_kib: int,
        vcpus: int,
        disk_path: str,
        bootstrap_path: Optional[str],
        network_name: str,
        mac: str,
    ) -> str:
        cdrom = ""
        if bootstrap_path:
            cdrom = f"""
    <disk type='file' device='cdrom'>
      <driver name='qemu' type='raw'/>
      <source file='{bootstrap_path}'/>
      <target dev='hdc' bus='ide'/>
      <readonly/>
    </disk>"""

        return f"""<domain type='{self.domain_type}'>
  <name>{name}</name>
  <uuid>{vm_uuid}</uuid>
  <memory unit='KiB'>{memory_kib}</memory>
  <currentMemory unit='KiB'>{memory_kib}</currentMemory>
  <vcpu placement='static'>{vcpus}</vcpu>
  <os>
    <type arch='x86_64'>hvm</type>
    <boot dev='hd'/>
  </os>
  <features>
    <acpi/>
    <apic/>
  </features>
  <cpu mode='host-model' check='partial'/>
  <clock offset='utc'>
    <timer name='rtc' tickpolicy='catchup'/>
    <timer name='pit' tickpolicy='delay'/>
    <timer name='hpet' present='no'/>
  </clock>
  <on_poweroff>destroy</on_poweroff>
  <on_reboot>restart</on_reboot>
  <on_crash>destroy</on_crash>
  <devices>
    <emulator>{self.emulator}</emulator>
    <disk type='file' device='disk'>
      <driver name='qemu' type='{DISK_FORMAT}'/>
      <source file='{disk_path}'/>
      <target dev='vda' bus='virtio'/>
    </disk>{cdrom}
    <interface type='network'>
      <mac address='{mac}'/>
      <source network='{network_name}'/>
      <model type='virtio'/>
    </interface>
    <serial type='pty'>
      <target port='0'/>
    </serial>
    <console type='pty'>
      <target type='serial' port='0'/>
    </console>
    <input type='mouse' bus='ps2'/>
    <input type='keyboard' bus='ps2'/>
    <graphics type='vnc' port='-1' autoport='yes' listen='127.0.0.1'/>
    <video>
      <model type='cirrus'/>
    </video>
    <memballoon model='virtio'/>
  </devices>
</domain>"""
