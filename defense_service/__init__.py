"""Project defense coaching service."""
