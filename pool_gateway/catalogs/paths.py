from __future__ import annotations

from pathlib import Path


class CatalogDataPaths:
    @staticmethod
    def data_dir() -> Path:
        return Path(__file__).resolve().parent / "data"

    @classmethod
    def models_yaml(cls) -> Path:
        return cls.data_dir() / "models.yaml"
