"""Data models: ORM tables, calculation payloads, boundary schemas."""
