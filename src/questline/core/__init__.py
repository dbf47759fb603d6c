"""Process-wide infrastructure shared by every questline component."""
