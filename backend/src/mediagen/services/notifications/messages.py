"""User-facing progress text for in-flight generations."""

from mediagen.models.pending_job import JobType

IMAGE_MESSAGES = (
    "Creating your image...",
    "Transforming your image...",
    "Processing your request...",
    "Generating your creation...",
    "Applying transformations...",
    "Optimizing quality...",
    "Working on your image...",
    "This may take a few minutes...",
)

VIDEO_MESSAGES = (
    "Creating your video...",
    "Rendering video frames...",
    "Processing video sequence...",
    "Generating your video...",
    "Compiling video frames...",
    "Finalizing video quality...",
    "This may take a few minutes...",
)

EXPECTED_SECONDS = {JobType.IMAGE: 30.0, JobType.VIDEO: 180.0}

WARNING_AFTER_MINUTES = 5
TIMEOUT_MINUTES = 10
MAX_IN_PROGRESS = 0.95


def progress_message(elapsed_seconds: float, job_type: JobType) -> str:
    """Message for a job still running after ``elapsed_seconds``.

    Rotates once per minute; from minute 5 it counts down to the 10 minute timeout.
    """
    minutes = int(max(elapsed_seconds, 0) // 60)
    if minutes >= TIMEOUT_MINUTES:
        return "Generation timed out"
    if minutes >= WARNING_AFTER_MINUTES:
        remaining = TIMEOUT_MINUTES - minutes
        plural = "" if remaining == 1 else "s"
        return (
            f"This will cancel in {remaining} minute{plural} if no result. "
            "You won't be charged for failed generations."
        )

    messages = VIDEO_MESSAGES if job_type == JobType.VIDEO else IMAGE_MESSAGES
    return messages[minutes % len(messages)]


def estimate_progress(elapsed_seconds: float, job_type: JobType) -> float:
    """Elapsed-time progress estimate, never reaching 1.0 while the job runs.

    Linear up to 90% of the expected duration, then creeps towards the cap.
    """
    expected = EXPECTED_SECONDS[job_type]
    ratio = max(elapsed_seconds, 0) / expected
    if ratio <= 1.0:
        return round(min(ratio * 0.9, MAX_IN_PROGRESS), 3)
    overtime = 1.0 - 1.0 / ratio
    return round(min(0.9 + overtime * (MAX_IN_PROGRESS - 0.9), MAX_IN_PROGRESS), 3)


def completed_message(title: str) -> str:
    return f"✅ {title} ready!"


def default_title(job_type: JobType) -> str:
    return "Video" if job_type == JobType.VIDEO else "Image"
