"""Service layer: catalog, assignments, scheduling, events and FTP reorder."""
