"""Storage protocols and their in-process and PostgreSQL backends."""
