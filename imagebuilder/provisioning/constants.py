"""Well-known state bag keys and remote state names."""

from typing import Any

from imagebuilder.provisioning.state import StateKey

# Run bookkeeping
ERROR: StateKey[BaseException] = StateKey("error")
CANCELLED: StateKey[bool] = StateKey("cancelled")
HALTED: StateKey[bool] = StateKey("halted")

# Injected collaborators
CONFIG: StateKey[Any] = StateKey("config")
HOOK: StateKey[Any] = StateKey("hook")

# Temporary resource names
COMPUTE_NAME: StateKey[str] = StateKey("computeName")
DEPLOYMENT_NAME: StateKey[str] = StateKey("deploymentName")
RESOURCE_GROUP_NAME: StateKey[str] = StateKey("resourceGroupName")
OS_DISK_NAME: StateKey[str] = StateKey("osDiskName")
LOCATION: StateKey[str] = StateKey("location")

# Resource-exists flags read by cleanup
SERVICE_EXISTS: StateKey[bool] = StateKey("srvExists")
CERT_UPLOADED: StateKey[bool] = StateKey("certUploaded")
VM_EXISTS: StateKey[bool] = StateKey("vmExists")
DISK_EXISTS: StateKey[bool] = StateKey("diskExists")
VM_RUNNING: StateKey[bool] = StateKey("vmRunning")
IMAGE_CREATED: StateKey[bool] = StateKey("imageCreated")

# Values discovered along the way
VM_ADDRESS: StateKey[str] = StateKey("azureVmAddr")
HARD_DISK_NAME: StateKey[str] = StateKey("hardDiskName")
MEDIA_LINK: StateKey[str] = StateKey("mediaLink")
OS_DISK_VHD: StateKey[str] = StateKey("osDiskVhd")

# Deployment provisioning states
DEPLOY_SUCCEEDED = "Succeeded"
DEPLOY_FAILED = "Failed"
DEPLOY_CANCELED = "Canceled"
DEPLOY_DELETED = "Deleted"

DEPLOYMENT_TERMINAL_STATES = frozenset({DEPLOY_SUCCEEDED})
DEPLOYMENT_FAILURE_STATES = frozenset({DEPLOY_FAILED, DEPLOY_CANCELED, DEPLOY_DELETED})

# VM power states
POWER_STARTING = "Starting"
POWER_STARTED = "Started"
POWER_STOPPING = "Stopping"
POWER_STOPPED = "Stopped"
POWER_UNKNOWN = "Unknown"

POWER_TERMINAL_STATES = frozenset({POWER_STARTED})
POWER_FAILURE_STATES = frozenset({POWER_STOPPING, POWER_STOPPED, POWER_UNKNOWN})
