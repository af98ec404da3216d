import logging
from typing import Optional

from autoresearch.models.job import ResearchJob

# Fields that are summarized instead of printed in full
BULKY_FIELDS = {"raw_research_data", "sources_used", "job_data", "logs"}
IGNORED_FIELDS = {"updated_at", "logs"}


def log_stage_transition(
    logger: logging.LoggerAdapter,
    stage_name: str,
    before: Optional[ResearchJob],
    after: Optional[ResearchJob],
) -> None:
    """Log the state transition for a stage, showing what changed on the job."""
    if before is None or after is None:
        return
    logger.info(f"\n{'='*50}\nStage: {stage_name}")
    logger.info("Changes:")
    old, new = before.model_dump(), after.model_dump()
    for key, value in new.items():
        if key in IGNORED_FIELDS or old.get(key) == value:
            continue
        if key in BULKY_FIELDS:
            logger.info(f"  {key}: <updated - {len(str(value))} chars>")
        else:
            logger.info(f"  {key}: {old.get(key)} -> {value}")
    if after.error_message and after.error_message != before.error_message:
        logger.error(f"Error in {stage_name}: {after.error_message}")
    logger.info(f"{'='*50}\n")
