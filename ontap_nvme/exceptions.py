"""Custom exceptions for the ONTAP NVMe/TCP storage backend."""


class OntapNvmeException(Exception):
    """Base exception for ONTAP NVMe backend errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class OntapAPIConnectionError(OntapNvmeException):
    """Failed to connect to the ONTAP management API."""

    pass


class OntapAPITimeout(OntapNvmeException):
    """API request timed out."""

    pass


class OntapAPIError(OntapNvmeException):
    """API returned an error response."""

    def __init__(
        self,
        message: str,
        status_code: int = None,
        error_code: str = None,
        response_data: dict = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.response_data = response_data


class OntapAuthenticationError(OntapAPIError):
    """Credentials were rejected by the array (HTTP 401)."""

    pass


class OntapJSONDecodeError(OntapNvmeException):
    """A successful response carried a body that is not valid JSON."""

    pass


class OntapJobFailed(OntapNvmeException):
    """An asynchronous array job ended in failure or error state."""

    def __init__(self, message: str, job_uuid: str = None, job_data: dict = None):
        super().__init__(message)
        self.job_uuid = job_uuid
        self.job_data = job_data


class OntapJobTimeout(OntapNvmeException):
    """An asynchronous array job did not finish within the poll budget."""

    def __init__(self, message: str, job_uuid: str = None):
        super().__init__(message)
        self.job_uuid = job_uuid


class OntapResourceNotFound(OntapNvmeException):
    """Generic resource not found error."""

    pass


class OntapSVMNotFound(OntapResourceNotFound):
    """SVM not found."""

    pass


class OntapVolumeNotFound(OntapResourceNotFound):
    """Volume not found."""

    pass


class OntapNamespaceNotFound(OntapResourceNotFound):
    """NVMe namespace not found."""

    pass


class OntapSubsystemNotFound(OntapResourceNotFound):
    """NVMe subsystem not found."""

    pass


class OntapSnapshotNotFound(OntapResourceNotFound):
    """Snapshot not found on either the group or the volume."""

    pass


class OntapNamespaceCreateError(OntapNvmeException):
    """Namespace creation failed after its volume was created."""

    pass


class OntapPortalError(OntapNvmeException):
    """No NVMe/TCP portal is configured or discoverable."""

    pass


class OntapUnsupportedOperation(OntapNvmeException):
    """Requested operation or format is not supported by this backend."""

    pass


class InvalidVolumeName(OntapNvmeException):
    """Volume name does not follow the disk or state naming scheme."""

    pass


class AllocationExhausted(OntapNvmeException):
    """No free disk index is left for an owner."""

    def __init__(self, message: str, owner_id: int = None):
        super().__init__(message)
        self.owner_id = owner_id


class DeviceNotAvailable(OntapNvmeException):
    """The namespace exists but no local block device is visible yet.

    Callers may present ``placeholder`` as a transient path and retry later.
    """

    def __init__(self, message: str, placeholder: str = None):
        super().__init__(message)
        self.placeholder = placeholder
