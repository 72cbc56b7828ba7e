"""FastAPI status and verification surface over a VerificationService."""
