"""Profile settings, LGPD consent and self-service data deletion."""
