"""Storage profiles: where an organization's data lives and how to reach it."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Protocol

import yaml

__all__ = [
    "StorageProfileError",
    "StorageProfileNotFoundError",
    "StorageProfile",
    "DatabaseProvider",
    "FileProvider",
]

_NIL_UUID = uuid.UUID(int=0)


class StorageProfileError(Exception):
    """A storage profile could not be loaded or parsed."""


class StorageProfileNotFoundError(StorageProfileError, LookupError):
    """No storage profile matches the lookup."""


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _uuid(value: Any) -> uuid.UUID:
    if value is None or value == "":
        return _NIL_UUID
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


@dataclass
class StorageProfile:
    """The bucket, region and credentials used for one organization instance."""

    organization_id: uuid.UUID = _NIL_UUID
    instance_num: int = 0
    collector_name: str = ""
    cloud_provider: str = ""
    region: str = ""
    role: str = ""
    bucket: str = ""
    hosted: bool = False
    endpoint: str = ""
    insecure_tls: bool = False
    use_path_style: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StorageProfile":
        """Build a profile from a mapping keyed like the YAML profile file."""
        if not isinstance(data, Mapping):
            raise StorageProfileError(f"storage profile must be a mapping, got {type(data).__name__}")
        try:
            return cls(
                organization_id=_uuid(data.get("organization_id")),
                instance_num=int(data.get("instance_num") or 0),
                collector_name=_text(data.get("collector_name")),
                cloud_provider=_text(data.get("cloud_provider")),
                region=_text(data.get("region")),
                role=_text(data.get("role")),
                bucket=_text(data.get("bucket")),
                hosted=bool(data.get("hosted", False)),
                endpoint=_text(data.get("endpoint")),
                insecure_tls=bool(data.get("insecure_tls", False)),
                use_path_style=bool(data.get("use_path_style", False)),
            )
        except (TypeError, ValueError) as err:
            raise StorageProfileError(f"invalid storage profile: {err}") from err


class _ProfileRow(Protocol):
    organization_id: uuid.UUID
    instance_num: int
    external_id: str
    cloud_provider: str
    region: str
    bucket: str
    hosted: bool
    role: str | None


class _ProfileFetcher(Protocol):
    def get_storage_profile(self, organization_id: uuid.UUID, instance_num: int) -> _ProfileRow: ...

    def get_storage_profile_by_collector_name(
        self, organization_id: uuid.UUID, collector_name: str
    ) -> _ProfileRow: ...


def _profile_from_row(row: _ProfileRow) -> StorageProfile:
    return StorageProfile(
        organization_id=row.organization_id,
        instance_num=row.instance_num,
        collector_name=row.external_id,
        cloud_provider=row.cloud_provider,
        region=row.region,
        bucket=row.bucket,
        hosted=row.hosted,
        role=row.role if row.role is not None else "",
    )


class DatabaseProvider:
    """Looks storage profiles up through a configuration database."""

    def __init__(self, fetcher: _ProfileFetcher) -> None:
        self._fetcher = fetcher

    def get(self, organization_id: uuid.UUID, instance_num: int) -> StorageProfile:
        row = self._fetcher.get_storage_profile(organization_id, instance_num)
        return _profile_from_row(row)

    def get_by_collector_name(self, organization_id: uuid.UUID, collector_name: str) -> StorageProfile:
        row = self._fetcher.get_storage_profile_by_collector_name(organization_id, collector_name)
        return _profile_from_row(row)


class FileProvider:
    """Serves storage profiles loaded from a YAML list."""

    def __init__(self, profiles: list[StorageProfile]) -> None:
        self.profiles = list(profiles)

    @classmethod
    def from_file(cls, filename: str | Path) -> "FileProvider":
        try:
            contents = Path(filename).read_bytes()
        except OSError as err:
            raise StorageProfileError(
                f"failed to read storage profiles from file {filename}: {err}"
            ) from err
        return cls.from_contents(filename, contents)

    @classmethod
    def from_contents(cls, filename: str | Path, contents: bytes | str) -> "FileProvider":
        """Parse YAML contents; profiles without a role are marked hosted."""
        try:
            data = yaml.safe_load(contents)
            if data is None:
                data = []
            if not isinstance(data, list):
                raise StorageProfileError("expected a list of storage profiles")
            profiles = [StorageProfile.from_dict(entry) for entry in data]
        except (yaml.YAMLError, StorageProfileError) as err:
            raise StorageProfileError(
                f"failed to unmarshal storage profiles from file {filename}: {err}"
            ) from err
        for profile in profiles:
            if not profile.role:
                profile.hosted = True
        return cls(profiles)

    def get(self, organization_id: uuid.UUID, instance_num: int) -> StorageProfile:
        for profile in self.profiles:
            if profile.organization_id == organization_id and profile.instance_num == instance_num:
                return profile
        raise StorageProfileNotFoundError(
            f"storage profile not found for organization {organization_id} and instance {instance_num}"
        )

    def get_by_collector_name(self, organization_id: uuid.UUID, collector_name: str) -> StorageProfile:
        for profile in self.profiles:
            if profile.organization_id == organization_id and profile.collector_name == collector_name:
                return profile
        raise StorageProfileNotFoundError(
            f"storage profile not found for organization {organization_id} "
            f"and collector name {collector_name}"
        )