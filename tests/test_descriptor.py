import xml.etree.ElementTree as ET

import pytest

from core.descriptor import (
    DescriptorBuilder,
    generate_mac_address,
    generate_uuid,
    memory_mb_to_kib,
)
from core.errors import DescriptorError
from core.models import MachineRecord


def _record(**overrides):
    fields = dict(name="alpha-1", tenant="tenant-A", vlan_id=100, cpu=2, memory=2048, disk=20)
    fields.update(overrides)
    return MachineRecord(**fields)


class TestIdentity:
    def test_mac_is_locally_administered_unicast(self):
        for _ in range(1000):
            first = int(generate_mac_address().split(":")[0], 16)
            assert first & 0b10
            assert not first & 0b01

    def test_mac_format(self):
        mac = generate_mac_address()
        octets = mac.split(":")
        assert len(octets) == 6
        assert all(len(o) == 2 and int(o, 16) <= 0xFF for o in octets)

    def test_uuid_is_version_4(self):
        assert generate_uuid()[14] == "4"

    def test_no_collisions_over_1000_builds(self):
        builder = DescriptorBuilder()
        descriptors = [builder.build(_record(), "/img/alpha-1.qcow2") for _ in range(1000)]
        assert len({d.uuid for d in descriptors}) == 1000
        assert len({d.mac_address for d in descriptors}) == 1000


class TestMemoryConversion:
    @pytest.mark.parametrize("mb,kib", [(512, 524288), (2048, 2097152), (32768, 33554432)])
    def test_known_values(self, mb, kib):
        assert memory_mb_to_kib(mb) == kib

    def test_exact_over_valid_range(self):
        for mb in range(512, 32769):
            assert memory_mb_to_kib(mb) == mb * 1024

    def test_descriptor_memory_fields(self):
        desc = DescriptorBuilder().build(_record(memory=2048), "/img/alpha-1.qcow2")
        root = ET.fromstring(desc.xml)
        assert desc.memory_kib == 2097152
        assert root.find("memory").get("unit") == "KiB"
        assert root.findtext("memory") == "2097152"
        assert root.findtext("currentMemory") == "2097152"


class TestDevices:
    def test_domain_basics(self):
        desc = DescriptorBuilder(domain_type="qemu").build(_record(cpu=4), "/img/alpha-1.qcow2")
        root = ET.fromstring(desc.xml)
        assert root.get("type") == "qemu"
        assert root.findtext("name") == "alpha-1"
        assert root.findtext("uuid") == desc.uuid
        assert root.findtext("vcpu") == "4"

    def test_exactly_one_virtio_disk(self):
        root = ET.fromstring(DescriptorBuilder().build(_record(), "/img/alpha-1.qcow2").xml)
        disks = root.findall("devices/disk[@device='disk']")
        assert len(disks) == 1
        assert disks[0].find("target").get("bus") == "virtio"
        assert disks[0].find("source").get("file") == "/img/alpha-1.qcow2"
        assert root.findall("devices/disk[@device='cdrom']") == []

    def test_bootstrap_volume_is_readonly_cdrom(self):
        desc = DescriptorBuilder().build(_record(), "/img/alpha-1.qcow2", "/ci/alpha-1-cloud-init.iso")
        cdroms = ET.fromstring(desc.xml).findall("devices/disk[@device='cdrom']")
        assert len(cdroms) == 1
        assert cdroms[0].find("source").get("file") == "/ci/alpha-1-cloud-init.iso"
        assert cdroms[0].find("readonly") is not None

    def test_single_interface_on_tenant_network(self):
        desc = DescriptorBuilder().build(_record(tenant="tenant-C"), "/img/x.qcow2")
        interfaces = ET.fromstring(desc.xml).findall("devices/interface")
        assert len(interfaces) == 1
        assert interfaces[0].find("source").get("network") == "vm-network-102"
        assert interfaces[0].find("mac").get("address") == desc.mac_address
        assert desc.network_name == "vm-network-102"

    def test_auxiliary_devices(self):
        devices = ET.fromstring(DescriptorBuilder().build(_record(), "/img/x.qcow2").xml).find("devices")
        assert devices.find("serial").get("type") == "pty"
        assert devices.find("console").get("type") == "pty"
        assert {i.get("type") for i in devices.findall("input")} == {"mouse", "keyboard"}
        assert devices.find("graphics").get("listen") == "127.0.0.1"

    def test_unmappable_tenant_fails_fast(self):
        with pytest.raises(DescriptorError, match="tenant-Z"):
            DescriptorBuilder().build(_record(tenant="tenant-Z"), "/img/x.qcow2")
