"""
Local audit records of uploaded backups.

One JSON file per archive, named after it. Records are written once and never
removed by the tool, including when the archive itself is pruned remotely.
"""

import json
import os
from dataclasses import asdict, dataclass
from typing import List, Optional


@dataclass
class BackupMetadata:
    name: str
    timestamp: str
    instance_id: str
    region: str
    size_bytes: int
    remote_location: str
    encrypted: bool
    encryption_method: Optional[str] = None
    key_ref: Optional[str] = None

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'BackupMetadata':
        fields = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in fields})


class MetadataStore:
    """Directory of BackupMetadata records."""

    def __init__(self, metadata_dir: str):
        self.metadata_dir = metadata_dir

    def path_for(self, name: str) -> str:
        return os.path.join(self.metadata_dir, f"{name}.json")

    def record(self, metadata: BackupMetadata) -> str:
        """
        Persist a record.

        Returns:
            Path of the written file

        Raises:
            OSError: If the record cannot be written
        """
        os.makedirs(self.metadata_dir, exist_ok=True)
        path = self.path_for(metadata.name)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, 'w') as f:
            json.dump(metadata.to_dict(), f, indent=2)
        os.replace(tmp_path, path)
        return path

    def load(self, name: str) -> Optional[BackupMetadata]:
        path = self.path_for(name)
        if not os.path.exists(path):
            return None
        with open(path, 'r') as f:
            return BackupMetadata.from_dict(json.load(f))

    def list_records(self) -> List[BackupMetadata]:
        """All records, newest first."""
        if not os.path.isdir(self.metadata_dir):
            return []

        records = []
        for filename in sorted(os.listdir(self.metadata_dir)):
            if filename.endswith('.json'):
                record = self.load(filename[:-len('.json')])
                if record:
                    records.append(record)
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records
