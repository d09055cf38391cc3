"""
Resource Operation Facade

Uniform get/search/create/update over clinical resource types. Paths follow
each partner's resource path convention; search results are unwrapped from
the partner's bundle envelope (following ``next`` links) into a flat list in
the order the partner returned them.
"""

import asyncio
from typing import Any, Dict, List, Optional

from integration_gateway.core.logging import get_logger

from .client import ResilientRequestClient
from .exceptions import UpstreamError
from .models import ClinicalResource, PatientRecord, ProviderConfig, ResourceType
from .registry import ProviderRegistry

logger = get_logger(__name__)


class ResourceFacade:
    """Clinical resource operations against any configured partner"""

    def __init__(self, registry: ProviderRegistry, client: ResilientRequestClient):
        self._registry = registry
        self._client = client

    # =========================================================================
    # Generic operations
    # =========================================================================

    async def get(self, partner: str, resource_type: ResourceType, resource_id: str) -> ClinicalResource:
        config = self._registry.get(partner)
        data = await self._client.request(partner, "GET", f"{config.resource_path(resource_type)}/{resource_id}")
        if not isinstance(data, dict):
            raise UpstreamError(f"Unexpected {resource_type.value} payload from {partner}", partner=partner)
        return ClinicalResource.from_payload(data, partner, resource_type)

    async def search(
        self,
        partner: str,
        resource_type: ResourceType,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[ClinicalResource]:
        """Search and return every matching resource in partner order."""
        config = self._registry.get(partner)
        path: Optional[str] = config.resource_path(resource_type)
        query = dict(params) if params else None
        results: List[ClinicalResource] = []
        pages = 0

        while path and pages < config.max_search_pages:
            data = await self._client.request(partner, "GET", path, params=query)
            pages += 1
            for payload in self._entries(data, resource_type):
                results.append(ClinicalResource.from_payload(payload, partner, resource_type))

            path = self._next_page(config, data)
            query = None  # next links carry their own query string

        if path:
            logger.info("ehr_search_truncated", partner=partner, resource_type=resource_type.value, pages=pages)
        return results

    async def create(self, partner: str, resource_type: ResourceType, payload: Dict[str, Any]) -> ClinicalResource:
        config = self._registry.get(partner)
        body = {"resourceType": resource_type.value, **payload}
        data = await self._client.request(partner, "POST", config.resource_path(resource_type), body=body)
        return ClinicalResource.from_payload(data if isinstance(data, dict) else body, partner, resource_type)

    async def update(
        self,
        partner: str,
        resource_type: ResourceType,
        resource_id: str,
        payload: Dict[str, Any],
    ) -> ClinicalResource:
        config = self._registry.get(partner)
        body = {"resourceType": resource_type.value, **payload, "id": resource_id}
        data = await self._client.request(
            partner, "PUT", f"{config.resource_path(resource_type)}/{resource_id}", body=body
        )
        return ClinicalResource.from_payload(data if isinstance(data, dict) else body, partner, resource_type)

    # =========================================================================
    # Envelope handling
    # =========================================================================

    @staticmethod
    def _entries(data: Any, resource_type: ResourceType) -> List[Dict[str, Any]]:
        if data is None:
            return []
        if isinstance(data, list):
            return [item for item in data if isinstance(item, dict)]
        if not isinstance(data, dict):
            return []

        if data.get("resourceType") == "Bundle" or "entry" in data:
            entries = []
            raw_entries = data.get("entry")
            for entry in raw_entries if isinstance(raw_entries, list) else []:
                if not isinstance(entry, dict):
                    continue
                resource = entry.get("resource")
                if not isinstance(resource, dict):
                    continue
                # Skip OperationOutcome and _include'd resources of other types
                if resource.get("resourceType", resource_type.value) != resource_type.value:
                    continue
                entries.append(resource)
            return entries

        if data.get("resourceType") == resource_type.value:
            return [data]
        return []

    @staticmethod
    def _next_page(config: ProviderConfig, data: Any) -> Optional[str]:
        if not isinstance(data, dict):
            return None
        links = data.get("link")
        for link in links if isinstance(links, list) else []:
            if not isinstance(link, dict):
                continue
            if link.get("relation") == "next" and isinstance(link.get("url"), str) and link["url"]:
                url = link["url"]
                if url.startswith(config.base_url + "/") or not url.startswith(("http://", "https://")):
                    return url
                logger.warning("ehr_search_foreign_next_link", partner=config.partner_id, url=url)
                return None
        return None

    # =========================================================================
    # Composite operations
    # =========================================================================

    async def sync_patient_record(self, partner: str, patient_id: str) -> PatientRecord:
        """
        Fetch patient, observations and appointments concurrently.

        Fails as a whole if any sub-fetch fails; no partial record is returned.
        """
        tasks = [
            asyncio.ensure_future(self.get_patient(partner, patient_id)),
            asyncio.ensure_future(self.get_observations(partner, patient_id)),
            asyncio.ensure_future(self.get_appointments(partner, patient_id)),
        ]
        try:
            patient, observations, appointments = await asyncio.gather(*tasks)
        except Exception as e:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.error(
                "ehr_patient_sync_failed",
                partner=partner,
                patient_id=patient_id,
                error_type=type(e).__name__,
            )
            raise

        logger.info(
            "ehr_patient_synced",
            partner=partner,
            patient_id=patient_id,
            observations=len(observations),
            appointments=len(appointments),
        )
        return PatientRecord(
            partner=partner,
            patient=patient,
            observations=observations,
            appointments=appointments,
        )

    # =========================================================================
    # Convenience methods
    # =========================================================================

    async def search_patients(self, partner: str, params: Optional[Dict[str, Any]] = None) -> List[ClinicalResource]:
        return await self.search(partner, ResourceType.PATIENT, params)

    async def get_patient(self, partner: str, patient_id: str) -> ClinicalResource:
        return await self.get(partner, ResourceType.PATIENT, patient_id)

    async def create_patient(self, partner: str, payload: Dict[str, Any]) -> ClinicalResource:
        return await self.create(partner, ResourceType.PATIENT, payload)

    async def update_patient(self, partner: str, patient_id: str, payload: Dict[str, Any]) -> ClinicalResource:
        return await self.update(partner, ResourceType.PATIENT, patient_id, payload)

    async def get_observations(self, partner: str, patient_id: str) -> List[ClinicalResource]:
        return await self.search(partner, ResourceType.OBSERVATION, {"patient": patient_id})

    async def create_observation(self, partner: str, payload: Dict[str, Any]) -> ClinicalResource:
        return await self.create(partner, ResourceType.OBSERVATION, payload)

    async def get_appointments(self, partner: str, patient_id: Optional[str] = None) -> List[ClinicalResource]:
        params = {"patient": patient_id} if patient_id else None
        return await self.search(partner, ResourceType.APPOINTMENT, params)

    async def create_appointment(self, partner: str, payload: Dict[str, Any]) -> ClinicalResource:
        return await self.create(partner, ResourceType.APPOINTMENT, payload)

    async def update_appointment(
        self, partner: str, appointment_id: str, payload: Dict[str, Any]
    ) -> ClinicalResource:
        return await self.update(partner, ResourceType.APPOINTMENT, appointment_id, payload)

    async def get_medication_requests(self, partner: str, patient_id: str) -> List[ClinicalResource]:
        return await self.search(partner, ResourceType.MEDICATION_REQUEST, {"patient": patient_id})


__all__ = ["ResourceFacade"]
