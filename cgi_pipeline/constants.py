"""Project-wide constants: provider costs, credit prices, progress ladder.

Costs are integers in millicents (1/1000 USD) so sums never drift.
"""

# Actual provider spend per call, in millicents
ACTUAL_COSTS: dict[str, int] = {
    "prompt_enhancement": 2,  # $0.002 Gemini text
    "image_generation": 39,  # $0.039 Gemini image
    "motion_analysis": 3,  # $0.003 Gemini video analysis
    "video_generation": 260,  # $0.26 Kling via PiAPI
}

# Credits charged to the user at project creation
CREDIT_COSTS: dict[str, int] = {
    "image_generation": 2,
    "video_short": 13,  # <= 5 seconds
    "video_long": 18,
    "audio_surcharge": 5,
}

SHORT_VIDEO_MAX_SECONDS = 5
MIN_VIDEO_DURATION_SECONDS = 5
MAX_VIDEO_DURATION_SECONDS = 10

JOB_TYPE_CGI_GENERATION = "cgi_generation"

# Higher is served first among pending jobs
JOB_PRIORITY: dict[str, int] = {
    "video": 2,
    "image": 1,
}

DEFAULT_MAX_RETRIES = 3

# Project progress ladder (percent)
PROGRESS_PROCESSING = 10
PROGRESS_ENHANCING_PROMPT = 25
PROGRESS_GENERATING_IMAGE = 60
PROGRESS_GENERATING_VIDEO = 80
PROGRESS_VIDEO_TASK_SUBMITTED = 85
PROGRESS_SOUND_TASK_SUBMITTED = 90
PROGRESS_POLL_SPAN = 15  # polling interpolates 80 -> 95
PROGRESS_COMPLETED = 100

# Kling request shaping
KLING_PROMPT_MAX_LENGTH = 2500
KLING_DEFAULT_NEGATIVE_PROMPT = "deformed, distorted, unnatural proportions"
KLING_ASPECT_RATIO = "16:9"
KLING_MODE = "std"
KLING_CFG_SCALE = 0.7

# Status fetch failures that become fatal after this many attempts
VIDEO_NOT_FOUND_GRACE_ATTEMPTS = 3
SOUND_NOT_FOUND_GRACE_ATTEMPTS = 5
MAX_CONSECUTIVE_STATUS_FAILURES = 3
