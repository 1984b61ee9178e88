from pathlib import Path
from typing import Optional


class StorageProvider:
    def save_bytes(self, key: str, data: bytes) -> str:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def path_for(self, key: str) -> Optional[Path]:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError
