"""REST API client for the ONTAP NVMe/TCP storage backend.

Manages volumes, NVMe namespaces, subsystems, consistency groups and
snapshots through the ONTAP REST API over HTTPS.
"""

import time
from typing import Any, Dict, List, Optional

import requests
from oslo_log import log as logging
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .configuration import ConnectionContext
from .exceptions import (
    OntapAPIConnectionError,
    OntapAPIError,
    OntapAPITimeout,
    OntapAuthenticationError,
    OntapJobFailed,
    OntapJobTimeout,
    OntapJSONDecodeError,
    OntapNvmeException,
    OntapSVMNotFound,
)

LOG = logging.getLogger(__name__)

JOB_SUCCESS = "success"
JOB_FAILED_STATES = ("failure", "error")

# Raw body excerpt length used when the array sends no structured error
ERROR_EXCERPT_LEN = 200

NAMESPACE_FIELDS = "uuid,name,space,status,location"
SNAPSHOT_FIELDS = "uuid,name,create_time,comment"


class OntapNvmeClient:
    """REST API client for ONTAP.

    Every list operation follows pagination links to the end, and every
    mutation answered with ``202 Accepted`` blocks until its job finishes.
    """

    def __init__(
        self,
        context: ConnectionContext,
        timeout: int = 30,
        retry_count: int = 3,
        job_poll_interval: float = 1,
        job_poll_max: int = 120,
    ):
        """Initialize the ONTAP API client.

        Args:
            context: Array endpoint, credentials and SVM scope
            timeout: HTTP request timeout in seconds
            retry_count: Number of retries for failed GET requests
            job_poll_interval: Seconds between job polls
            job_poll_max: Maximum job polls before giving up
        """
        self.context = context
        self.base_url = context.base_url
        self.vserver = context.vserver
        self.timeout = timeout
        self.retry_count = retry_count
        self.verify_ssl = context.verify_ssl
        self.job_poll_interval = job_poll_interval
        self.job_poll_max = job_poll_max

        self._svm_uuid: Optional[str] = None

        self.session = requests.Session()
        self.session.auth = (context.username, context.password)
        self.session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

        # Only retry safe methods (GET) to avoid duplicate operations
        retry_strategy = Retry(
            total=retry_count,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("https://", adapter)

    # REST helpers

    def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make an HTTP request to the ONTAP API.

        Args:
            method: HTTP method (GET, POST, DELETE, PATCH)
            path: API path below /api (e.g., /storage/volumes)
            json_data: Request body as JSON
            params: Query parameters

        Returns:
            Decoded response, or the final job payload for async operations

        Raises:
            OntapAuthenticationError: Credentials rejected
            OntapAPIError: API returned an error
            OntapJSONDecodeError: Successful response with a malformed body
            OntapJobFailed: Async job ended in failure
            OntapJobTimeout: Async job did not finish in time
            OntapAPIConnectionError: Connection failed
            OntapAPITimeout: Request timed out
        """
        url = f"{self.base_url}{path}"
        LOG.debug("ONTAP %s %s params=%s", method, path, params)

        try:
            response = self.session.request(
                method=method,
                url=url,
                json=json_data,
                params=params,
                timeout=self.timeout,
                verify=self.verify_ssl,
            )
        except requests.exceptions.Timeout as e:
            raise OntapAPITimeout(f"ONTAP API request timed out after {self.timeout}s: {e}")
        except requests.exceptions.ConnectionError as e:
            raise OntapAPIConnectionError(f"Failed to connect to ONTAP at {self.context.host}: {e}")
        except requests.exceptions.RequestException as e:
            raise OntapAPIError(f"ONTAP API request failed: {e}")

        status = response.status_code

        if status == 401:
            raise OntapAuthenticationError(
                f"ONTAP authentication failed for '{self.context.username}' "
                f"at https://{self.context.host}",
                status_code=status,
            )

        if status >= 400:
            raise self._api_error(response)

        data = self._decode(response)

        if status == 202 and data.get("job"):
            return self._wait_for_job(data["job"]["uuid"])

        return data

    @staticmethod
    def _decode(response) -> Dict[str, Any]:
        content = response.text or ""
        if not content.strip():
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise OntapJSONDecodeError(f"ONTAP API JSON parse error: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise OntapJSONDecodeError(f"ONTAP API returned {type(data).__name__} where an object was expected")
        return data

    @staticmethod
    def _api_error(response) -> OntapAPIError:
        status = response.status_code
        content = response.text or ""
        try:
            error_data = response.json()
        except ValueError:
            error_data = None

        error = error_data.get("error") if isinstance(error_data, dict) else None
        msg = f"ONTAP API error ({status})"
        error_code = None
        if error:
            msg += f": {error.get('message', '')}"
            error_code = error.get("code")
            if error_code:
                msg += f" (code {error_code})"
        elif content:
            msg += f": {content[:ERROR_EXCERPT_LEN]}"

        return OntapAPIError(
            msg,
            status_code=status,
            error_code=error_code,
            response_data=error_data,
        )

    def _wait_for_job(self, job_uuid: str) -> Dict[str, Any]:
        """Poll an async job until it reaches a terminal state."""
        for attempt in range(self.job_poll_max):
            job = self._request("GET", f"/cluster/jobs/{job_uuid}")
            state = job.get("state") or ""
            LOG.debug("ONTAP job %s state=%s (poll %d)", job_uuid, state, attempt + 1)

            if state == JOB_SUCCESS:
                return job

            if state in JOB_FAILED_STATES:
                errmsg = job.get("message") or "unknown error"
                raise OntapJobFailed(
                    f"ONTAP job {job_uuid} failed: {errmsg}",
                    job_uuid=job_uuid,
                    job_data=job,
                )

            if attempt + 1 < self.job_poll_max:
                time.sleep(self.job_poll_interval)

        raise OntapJobTimeout(
            f"ONTAP job {job_uuid} timed out after {self.job_poll_max} polls",
            job_uuid=job_uuid,
        )

    def _get(self, path, params=None):
        return self._request("GET", path, params=params)

    def _post(self, path, json_data=None, params=None):
        return self._request("POST", path, json_data=json_data, params=params)

    def _patch(self, path, json_data=None, params=None):
        return self._request("PATCH", path, json_data=json_data, params=params)

    def _delete(self, path, params=None):
        return self._request("DELETE", path, params=params)

    def _get_records(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Return every record of a list query, following ``_links.next``."""
        data = self._get(path, params=params)
        records = list(data.get("records") or [])
        seen = set()

        while True:
            next_href = ((data.get("_links") or {}).get("next") or {}).get("href")
            if not next_href:
                break
            if next_href in seen:
                raise OntapAPIError(f"ONTAP pagination loop detected at {next_href}")
            seen.add(next_href)

            data = self._get(self._relative_path(next_href))
            records.extend(data.get("records") or [])

        return records

    @staticmethod
    def _relative_path(href: str) -> str:
        # next links are absolute within the API ("/api/storage/...")
        if href.startswith("/api/"):
            return href[len("/api"):]
        return href

    def _first_record(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        records = self._get(path, params=params).get("records") or []
        return records[0] if records else None

    # SVM

    def get_svm_uuid(self) -> str:
        """Get the UUID of the configured SVM.

        Raises:
            OntapSVMNotFound: SVM does not exist
        """
        if self._svm_uuid:
            return self._svm_uuid

        svm = self._first_record("/svm/svms", params={"name": self.vserver, "fields": "uuid"})
        if not svm:
            raise OntapSVMNotFound(f"SVM '{self.vserver}' not found")

        self._svm_uuid = svm["uuid"]
        return self._svm_uuid

    # Volume operations

    def get_volume(self, vol_name: str) -> Optional[Dict[str, Any]]:
        return self._first_record(
            "/storage/volumes",
            params={"name": vol_name, "svm.name": self.vserver, "fields": "uuid,name,space"},
        )

    def get_volume_uuid(self, vol_name: str) -> Optional[str]:
        vol = self.get_volume(vol_name)
        return vol["uuid"] if vol else None

    def list_volumes(self, pattern: str) -> List[Dict[str, Any]]:
        """List volumes of the SVM whose name matches an ONTAP wildcard."""
        return self._get_records(
            "/storage/volumes",
            params={"svm.name": self.vserver, "name": pattern, "fields": "uuid,name,space"},
        )

    def create_volume(
        self,
        vol_name: str,
        size_bytes: int,
        aggregate: Optional[str] = None,
        snapshot_policy: Optional[str] = None,
        space_reserve: Optional[str] = None,
        snapshot_reserve: Optional[int] = None,
        encryption: Optional[bool] = None,
        qos_policy: Optional[str] = None,
        adaptive_qos_policy: Optional[str] = None,
        tiering_policy: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a FlexVol volume.

        Args:
            vol_name: Volume name
            size_bytes: Volume size in bytes
            aggregate: Aggregate to place the volume on
            snapshot_policy: Snapshot policy name (default: none)
            space_reserve: Space guarantee, ``none`` or ``volume`` (default: none)
            snapshot_reserve: Snapshot reserve percent
            encryption: False disables encryption; otherwise NVE is enabled
                unless the aggregate already provides NAE
            qos_policy: Fixed QoS policy group
            adaptive_qos_policy: Adaptive QoS policy group (used only without qos_policy)
            tiering_policy: FabricPool tiering policy

        Returns:
            API response or job payload
        """
        snapshot_policy = snapshot_policy or "none"
        space_reserve = space_reserve or "none"

        body: Dict[str, Any] = {
            "name": vol_name,
            "svm": {"name": self.vserver},
            "size": int(size_bytes),
            "guarantee": {"type": space_reserve},
            "snapshot_policy": {"name": snapshot_policy},
        }

        if snapshot_reserve is None:
            snapshot_reserve = 0 if snapshot_policy == "none" else 5
        body["space"] = {"snapshot": {"reserve_percent": int(snapshot_reserve)}}

        if aggregate:
            body["aggregates"] = [{"name": aggregate}]

        # encryption: prefer NAE, fall back to NVE
        if encryption is False:
            body["encryption"] = {"enabled": False}
        elif not self.is_aggregate_nae(aggregate):
            body["encryption"] = {"enabled": True}

        if qos_policy:
            body["qos"] = {"policy": {"name": qos_policy}}
        elif adaptive_qos_policy:
            body["qos"] = {"policy": {"name": adaptive_qos_policy}}

        if tiering_policy:
            body["tiering"] = {"policy": tiering_policy}

        LOG.debug("Creating volume %s (%d bytes)", vol_name, size_bytes)
        return self._post("/storage/volumes", json_data=body)

    def delete_volume(self, vol_uuid: str) -> Dict[str, Any]:
        """Take a volume offline (best effort) and delete it."""
        try:
            self._patch(f"/storage/volumes/{vol_uuid}", json_data={"state": "offline"})
        except OntapAPIError as e:
            LOG.warning("Failed to take volume %s offline before delete: %s", vol_uuid, e)

        return self._delete(f"/storage/volumes/{vol_uuid}")

    def resize_volume(self, vol_uuid: str, new_size: int) -> Dict[str, Any]:
        return self._patch(f"/storage/volumes/{vol_uuid}", json_data={"size": int(new_size)})

    # NVMe namespace operations

    def create_namespace(
        self,
        vol_name: str,
        ns_name: str,
        size_bytes: int,
        os_type: str = "linux",
    ) -> Dict[str, Any]:
        return self._post(
            "/storage/namespaces",
            params={"return_records": "true"},
            json_data={
                "svm": {"name": self.vserver},
                "name": f"/vol/{vol_name}/{ns_name}",
                "os_type": os_type,
                "space": {
                    "block_size": 4096,
                    "size": int(size_bytes),
                },
            },
        )

    def delete_namespace(self, ns_uuid: str) -> Dict[str, Any]:
        return self._delete(f"/storage/namespaces/{ns_uuid}")

    def get_namespace_by_name(self, ns_path: str) -> Optional[Dict[str, Any]]:
        return self._first_record(
            "/storage/namespaces",
            params={"name": ns_path, "svm.name": self.vserver, "fields": NAMESPACE_FIELDS},
        )

    def list_namespaces(self, pattern: Optional[str] = None) -> List[Dict[str, Any]]:
        """List namespaces of the SVM, optionally filtered by an ONTAP wildcard."""
        params = {"svm.name": self.vserver, "fields": NAMESPACE_FIELDS}
        if pattern:
            params["name"] = pattern
        return self._get_records("/storage/namespaces", params=params)

    def resize_namespace(self, ns_uuid: str, new_size: int) -> Dict[str, Any]:
        return self._patch(
            f"/storage/namespaces/{ns_uuid}",
            json_data={"space": {"size": int(new_size)}},
        )

    # NVMe subsystem operations

    def get_subsystem(self, name: str) -> Optional[Dict[str, Any]]:
        return self._first_record(
            "/protocols/nvme/subsystems",
            params={"name": name, "svm.name": self.vserver, "fields": "uuid,name"},
        )

    def create_subsystem(self, name: str, os_type: str = "linux") -> Dict[str, Any]:
        return self._post(
            "/protocols/nvme/subsystems",
            json_data={
                "svm": {"name": self.vserver},
                "name": name,
                "os_type": os_type,
            },
        )

    def add_host_to_subsystem(self, subsys_uuid: str, hostnqn: str) -> None:
        """Allow a host NQN on a subsystem; an existing entry is not an error."""
        try:
            self._post(f"/protocols/nvme/subsystems/{subsys_uuid}/hosts", json_data={"nqn": hostnqn})
        except OntapAPIError as e:
            lowered = e.message.lower()
            if "already exists" in lowered or "duplicate" in lowered:
                return
            raise

    def map_namespace_to_subsystem(self, subsys_uuid: str, ns_uuid: str) -> Dict[str, Any]:
        return self._post(
            "/protocols/nvme/subsystem-maps",
            json_data={
                "svm": {"name": self.vserver},
                "subsystem": {"uuid": subsys_uuid},
                "namespace": {"uuid": ns_uuid},
            },
        )

    def unmap_namespace_from_subsystem(self, subsys_uuid: str, ns_uuid: str) -> None:
        """Remove a subsystem map; a map that is already gone is not an error."""
        try:
            self._delete(f"/protocols/nvme/subsystem-maps/{subsys_uuid}/{ns_uuid}")
        except OntapAPIError as e:
            lowered = e.message.lower()
            if "not found" in lowered or "not exist" in lowered:
                return
            raise

    def get_namespace_subsystem_maps(self, ns_uuid: str) -> List[Dict[str, Any]]:
        return self._get_records(
            "/protocols/nvme/subsystem-maps",
            params={
                "namespace.uuid": ns_uuid,
                "svm.name": self.vserver,
                "fields": "subsystem,namespace",
            },
        )

    # Consistency group operations

    def get_consistency_group(self, cg_name: str) -> Optional[Dict[str, Any]]:
        return self._first_record(
            "/application/consistency-groups",
            params={"svm.name": self.vserver, "name": cg_name, "fields": "uuid,name,volumes"},
        )

    def create_consistency_group(self, cg_name: str, volume_names: Optional[List[str]] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "svm": {"name": self.vserver},
            "name": cg_name,
        }
        if volume_names:
            body["volumes"] = [
                {"name": name, "provisioning_options": {"action": "add"}} for name in volume_names
            ]

        return self._post(
            "/application/consistency-groups",
            params={"return_records": "true"},
            json_data=body,
        )

    def add_volume_to_consistency_group(self, cg_uuid: str, vol_name: str) -> Dict[str, Any]:
        return self._patch(
            f"/application/consistency-groups/{cg_uuid}",
            json_data={
                "volumes": [
                    {"name": vol_name, "provisioning_options": {"action": "add"}},
                ],
            },
        )

    def delete_consistency_group(self, cg_uuid: str) -> Dict[str, Any]:
        return self._delete(f"/application/consistency-groups/{cg_uuid}")

    # Consistency group snapshot operations

    def create_cg_snapshot(self, cg_uuid: str, snap_name: str, comment: Optional[str] = None) -> Dict[str, Any]:
        body = {"name": snap_name}
        if comment:
            body["comment"] = comment
        return self._post(f"/application/consistency-groups/{cg_uuid}/snapshots", json_data=body)

    def list_cg_snapshots(self, cg_uuid: str, name_filter: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"fields": SNAPSHOT_FIELDS}
        if name_filter:
            params["name"] = name_filter
        return self._get_records(f"/application/consistency-groups/{cg_uuid}/snapshots", params=params)

    def get_cg_snapshot_by_name(self, cg_uuid: str, snap_name: str) -> Optional[Dict[str, Any]]:
        snaps = self.list_cg_snapshots(cg_uuid, snap_name)
        return snaps[0] if snaps else None

    def delete_cg_snapshot(self, cg_uuid: str, snap_uuid: str) -> Dict[str, Any]:
        return self._delete(f"/application/consistency-groups/{cg_uuid}/snapshots/{snap_uuid}")

    def restore_cg_snapshot(self, cg_uuid: str, snap_uuid: str) -> Dict[str, Any]:
        return self._patch(
            f"/application/consistency-groups/{cg_uuid}",
            json_data={"restore_to": {"snapshot": {"uuid": snap_uuid}}},
        )

    # Volume-level snapshot operations

    def create_snapshot(self, vol_uuid: str, snap_name: str, comment: Optional[str] = None) -> Dict[str, Any]:
        body = {"name": snap_name}
        if comment:
            body["comment"] = comment
        return self._post(f"/storage/volumes/{vol_uuid}/snapshots", json_data=body)

    def list_snapshots(self, vol_uuid: str, name_filter: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"fields": SNAPSHOT_FIELDS}
        if name_filter:
            params["name"] = name_filter
        return self._get_records(f"/storage/volumes/{vol_uuid}/snapshots", params=params)

    def get_snapshot_by_name(self, vol_uuid: str, snap_name: str) -> Optional[Dict[str, Any]]:
        snaps = self.list_snapshots(vol_uuid, snap_name)
        return snaps[0] if snaps else None

    def delete_snapshot(self, vol_uuid: str, snap_uuid: str) -> Dict[str, Any]:
        return self._delete(f"/storage/volumes/{vol_uuid}/snapshots/{snap_uuid}")

    def restore_snapshot(self, vol_uuid: str, snap_uuid: str) -> Dict[str, Any]:
        return self._patch(
            f"/storage/volumes/{vol_uuid}",
            json_data={"restore_to": {"snapshot": {"uuid": snap_uuid}}},
        )

    # NVMe LIF discovery

    def get_nvme_lif_addresses(self) -> List[str]:
        """Return IP addresses of enabled data LIFs serving NVMe/TCP."""
        lifs = self._get_records(
            "/network/ip/interfaces",
            params={
                "svm.name": self.vserver,
                "services": "data_nvme_tcp",
                "fields": "ip,name,enabled",
            },
        )

        addrs = []
        for lif in lifs:
            address = (lif.get("ip") or {}).get("address")
            if not address:
                continue
            if lif.get("enabled") is False:
                continue
            addrs.append(address)
        return addrs

    # Aggregate helpers

    def is_aggregate_nae(self, aggr_name: Optional[str]) -> bool:
        """Whether an aggregate already provides aggregate-level encryption."""
        if not aggr_name:
            return False

        try:
            aggr = self._first_record(
                "/storage/aggregates",
                params={"name": aggr_name, "fields": "data_encryption"},
            )
        except OntapNvmeException as e:
            LOG.debug("Cannot read encryption state of aggregate %s: %s", aggr_name, e)
            return False

        if not aggr:
            return False
        return bool((aggr.get("data_encryption") or {}).get("software_encryption_enabled"))

    def get_aggregate_space(self, aggr_name: Optional[str] = None) -> Optional[Dict[str, int]]:
        """Return ``{total, used, free}`` bytes of an aggregate."""
        params = {"fields": "space"}
        if aggr_name:
            params["name"] = aggr_name

        aggr = self._first_record("/storage/aggregates", params=params)
        if not aggr:
            return None

        space = aggr.get("space") or {}
        space = space.get("block_storage") or space
        return {
            "total": space.get("size", 0),
            "used": space.get("used", 0),
            "free": space.get("available", 0),
        }

    def close(self):
        """Close the HTTP session."""
        if self.session:
            self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
