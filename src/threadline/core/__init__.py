"""Process-wide infrastructure: logging, telemetry and the job scheduler."""
