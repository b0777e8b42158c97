from __future__ import annotations
from sqlalchemy.orm import declarative_base

# Shared metadata for every table in the rental core
Base = declarative_base()
