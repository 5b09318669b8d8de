"""
Keyword based service type suggestions for free-text emergency descriptions
"""
from typing import Dict, List, Tuple

from emergency_dispatch.models.dispatch import ServiceType

SERVICE_KEYWORDS: Dict[ServiceType, Tuple[str, ...]] = {
    ServiceType.FIRE: ("fire", "burning", "smoke", "flame"),
    ServiceType.AMBULANCE: ("injured", "bleeding", "unconscious", "medical", "ambulance", "emergency"),
    ServiceType.POLICE: ("robbery", "violence", "gun", "crime", "police", "theft"),
}


def suggest_service_types(description: str) -> List[ServiceType]:
    """
    Service types whose keywords appear in the description

    Matching is a case-insensitive substring check. The result follows the
    order of SERVICE_KEYWORDS and is empty when nothing matches.
    """
    text = (description or "").lower()
    return [
        service_type
        for service_type, keywords in SERVICE_KEYWORDS.items()
        if any(keyword in text for keyword in keywords)
    ]
