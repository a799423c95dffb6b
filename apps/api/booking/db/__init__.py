"""Database layer: engine, declarative base, enums and models."""
