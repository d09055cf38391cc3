"""
Integrations Package

Partner system integrations for the hospital platform:
- EHR partners: OAuth credential lifecycle, FHIR resource proxying, webhooks, HL7 v2
"""

from .ehr import EHRIntegrationService

__all__ = ["EHRIntegrationService"]
