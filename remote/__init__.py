"""Remote execution layer: sessions, probes, transfers and terminals."""
