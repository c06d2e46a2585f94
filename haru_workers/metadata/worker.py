"""
Worker boundary for certification records.

Turns a certification document into the metadata update the document
store should apply. Deciding when to run (triggers, queues) and writing
the update are left to the caller.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from haru_workers.metadata.extractor import MetadataExtractor
from haru_workers.metadata.types import Domain

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


METADATA_FIELDS = {
    Domain.EXERCISE: "exerciseMetadata",
    Domain.DIET: "dietMetadata",
}


def needs_processing(certification: Dict[str, Any]) -> bool:
    """Skip records without a photo or already processed."""
    if certification.get("metadataProcessed"):
        return False
    return bool(certification.get("photoUrl"))


def process_certification(
    certification: Dict[str, Any],
    extractor: MetadataExtractor
) -> Optional[Dict[str, Any]]:
    """
    Extract metadata for one certification record.

    Args:
        certification: Document with 'id', 'type' (운동/식단) and 'photoUrl'
        extractor: Shared MetadataExtractor

    Returns:
        Update to apply to the document, or None if nothing to do

    Raises:
        ValueError: Unknown certification type
    """
    cert_id = certification.get("id") or "unknown"
    if not needs_processing(certification):
        logger.info(f"Certification {cert_id}: nothing to process")
        return None

    domain = Domain.from_label(certification.get("type", ""))
    image_reference = certification["photoUrl"]

    if domain == Domain.EXERCISE:
        metadata = extractor.extract_exercise_metadata(image_reference, cert_id)
    else:
        metadata = extractor.extract_diet_metadata(image_reference, cert_id)

    update = {
        METADATA_FIELDS[domain]: metadata.to_dict(),
        "metadataProcessed": True,
        "metadataProcessedAt": datetime.now(timezone.utc).isoformat(),
        "metadataError": metadata.error.to_dict() if metadata.error else None,
    }

    if metadata.error:
        logger.warning(
            f"Certification {cert_id}: processed with {metadata.error.kind.value} error "
            f"(can_retry={metadata.error.can_retry})"
        )
    else:
        logger.info(
            f"Certification {cert_id}: {domain.value} metadata stored "
            f"(confidence {metadata.confidence_score:.2f})"
        )
    return update


def _process_isolated(
    certification: Dict[str, Any],
    extractor: MetadataExtractor
) -> Optional[Dict[str, Any]]:
    try:
        return process_certification(certification, extractor)
    except ValueError as e:
        logger.error(f"Certification {certification.get('id') or 'unknown'}: skipped, {e}")
        return None


def process_batch(
    certifications: Iterable[Dict[str, Any]],
    extractor: MetadataExtractor,
    max_workers: int = 4
) -> List[Tuple[str, Optional[Dict[str, Any]]]]:
    """
    Process several certifications in parallel.

    The extractor's throttle still bounds in-flight AI calls. A record
    that cannot be processed (unknown type) gets a None update and does
    not stop the rest of the batch.

    Returns:
        (certification id, update) pairs in input order
    """
    items = list(certifications)
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        updates = list(pool.map(lambda cert: _process_isolated(cert, extractor), items))

    failed = sum(
        1 for cert, update in zip(items, updates)
        if update is None and needs_processing(cert)
    )
    logger.info(f"Processed batch of {len(items)} certifications ({failed} failed)")
    return [(cert.get("id"), update) for cert, update in zip(items, updates)]
