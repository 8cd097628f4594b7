"""Random names for the temporary resources of one build."""

import secrets
from dataclasses import dataclass

TEMP_NAME_ALPHABET = "0123456789bcdfghjklmnpqrstvwxyz"
SUFFIX_LENGTH = 10


def random_string(alphabet: str, length: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


@dataclass(frozen=True)
class TempNames:
    """Names sharing one random suffix, so a build's resources are easy to spot."""

    suffix: str
    compute_name: str
    deployment_name: str
    os_disk_name: str
    resource_group_name: str

    @classmethod
    def generate(cls, suffix: str = "") -> "TempNames":
        suffix = suffix or random_string(TEMP_NAME_ALPHABET, SUFFIX_LENGTH)
        return cls(
            suffix=suffix,
            compute_name=f"pkrvm{suffix}",
            deployment_name=f"pkrdp{suffix}",
            os_disk_name=f"pkros{suffix}",
            resource_group_name=f"packer-Resource-Group-{suffix}",
        )
