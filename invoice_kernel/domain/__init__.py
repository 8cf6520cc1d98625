"""Pure domain values for the invoice edit core (zero I/O)."""
