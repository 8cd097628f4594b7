"""Tests for temporary resource names."""

from imagebuilder.provisioning.tempname import TEMP_NAME_ALPHABET, TempNames


class TestTempNames:
    def test_prefixes(self):
        names = TempNames.generate()

        assert names.compute_name.startswith("pkrvm")
        assert names.deployment_name.startswith("pkrdp")
        assert names.os_disk_name.startswith("pkros")
        assert names.resource_group_name.startswith("packer-Resource-Group-")

    def test_shared_suffix(self):
        names = TempNames.generate()

        assert len(names.suffix) == 10
        assert all(c in TEMP_NAME_ALPHABET for c in names.suffix)
        assert names.compute_name == f"pkrvm{names.suffix}"
        assert names.resource_group_name.endswith(names.suffix)

    def test_names_differ_between_builds(self):
        assert TempNames.generate().suffix != TempNames.generate().suffix
