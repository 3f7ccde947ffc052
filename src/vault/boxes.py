"""
Physical key-value containers ("boxes").

A box maps string keys to JSON-compatible values (ciphertext strings, the
integer schema version, backup blobs). It knows nothing about encryption.

- FileBox: append-only JSON-lines log replayed into memory on open.
- S3Box: the whole box as one JSON object in S3 with ETag-guarded writes.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol, Tuple
from uuid import uuid4

import boto3
from botocore.exceptions import ClientError

from common.diagnostics import safe_log
from common.paths import ensure_dir

from .errors import StorageIOError


logger = logging.getLogger(__name__)

BOX_SUFFIX = ".box"

_OP_PUT = "put"
_OP_DEL = "del"
_OP_CLEAR = "clear"


class Box(Protocol):
    name: str

    def get(self, key: str, default: Any = None) -> Any: ...

    def put(self, key: str, value: Any) -> None: ...

    def put_all(self, entries: Mapping[str, Any]) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...

    def replace_all(self, entries: Mapping[str, Any]) -> None: ...

    def keys(self) -> List[str]: ...

    def items(self) -> List[Tuple[str, Any]]: ...

    def to_dict(self) -> Dict[str, Any]: ...

    def __contains__(self, key: object) -> bool: ...

    def __len__(self) -> int: ...

    def close(self) -> None: ...


def _encode_record(record: Dict[str, Any]) -> bytes:
    return json.dumps(record, separators=(",", ":"), ensure_ascii=False).encode("utf-8") + b"\n"


class FileBox:
    """
    Append-only log-structured box stored at `<dir>/<name>.box`.

    Each mutation appends one JSON record and fsyncs:
      {"op":"put","k":...,"v":...} | {"op":"del","k":...} | {"op":"clear"}

    Recovery on open
    - A torn final record (no trailing newline, or unparseable last line)
      is the signature of an interrupted write: it is dropped and the file
      truncated back to the last good record.
    - An unparseable record followed by good ones is real corruption and
      raises StorageIOError.

    Once `compact_threshold` superseded records accumulate, the live map is
    rewritten to a temp file which atomically replaces the log.
    """

    def __init__(
        self,
        directory: os.PathLike[str] | str,
        name: str,
        *,
        compact_threshold: int = 500,
        log: Optional[logging.Logger] = None,
    ) -> None:
        if not name or "/" in name or "\\" in name or name.startswith("."):
            raise ValueError(f"invalid box name: {name!r}")
        if compact_threshold <= 0:
            raise ValueError("compact_threshold must be > 0")
        self.name = name
        self._log = log or logger
        self._threshold = compact_threshold
        self._data: Dict[str, Any] = {}
        self._records = 0
        self._fh = None
        self._broken = False
        try:
            self._dir = ensure_dir(directory)
            self.path = self._dir / f"{name}{BOX_SUFFIX}"
            self._replay()
            self._fh = self.path.open("ab", buffering=0)
        except OSError as ex:
            raise StorageIOError(f"Failed to open box '{name}'", cause=ex) from ex

    # -------- Log replay --------
    def _replay(self) -> None:
        if not self.path.exists():
            return
        raw = self.path.read_bytes()
        lines = raw.split(b"\n")
        # Everything before the final newline is complete; the remainder is a torn tail
        complete, tail = lines[:-1], lines[-1]
        good_end = 0
        offset = 0
        bad_at: Optional[int] = None
        for idx, line in enumerate(complete):
            line_end = offset + len(line) + 1
            if line.strip():
                try:
                    record = json.loads(line.decode("utf-8"))
                    self._apply(record)
                except (ValueError, KeyError, TypeError) as ex:
                    if idx == len(complete) - 1 and not tail.strip():
                        bad_at = offset
                        break
                    raise StorageIOError(
                        f"Corrupt record at byte {offset} in box '{self.name}'", cause=ex
                    ) from ex
            good_end = line_end
            offset = line_end

        if bad_at is not None or tail:
            safe_log(
                self._log,
                logging.WARNING,
                "Box '%s': dropping torn tail record (%d bytes) left by an interrupted write",
                self.name,
                len(raw) - good_end,
            )
            with self.path.open("r+b") as f:
                f.truncate(good_end)
                f.flush()
                os.fsync(f.fileno())

    def _apply(self, record: Dict[str, Any]) -> None:
        op = record["op"]
        if op == _OP_PUT:
            key, value = record["k"], record["v"]
            if not isinstance(key, str):
                raise TypeError("record key must be a string")
            self._data[key] = value
        elif op == _OP_DEL:
            self._data.pop(record["k"], None)
        elif op == _OP_CLEAR:
            self._data.clear()
        else:
            raise ValueError(f"unknown op {op!r}")
        self._records += 1

    @property
    def dead_records(self) -> int:
        return self._records - len(self._data)

    # -------- Writes --------
    def _append(self, records: List[Dict[str, Any]]) -> None:
        if self._fh is None:
            raise StorageIOError(f"Box '{self.name}' is closed")
        if self._broken:
            raise StorageIOError(
                f"Box '{self.name}' holds an unrolled-back partial write; reopen it to recover"
            )
        payload = b"".join(_encode_record(r) for r in records)
        try:
            fd = self._fh.fileno()
            offset = os.fstat(fd).st_size
        except OSError as ex:
            raise StorageIOError(f"Failed to write to box '{self.name}'", cause=ex) from ex
        try:
            view = memoryview(payload)
            while view:
                written = self._fh.write(view)
                view = view[written:]
            os.fsync(fd)
        except OSError as ex:
            self._rollback(offset)
            raise StorageIOError(f"Failed to write to box '{self.name}'", cause=ex) from ex
        for r in records:
            self._apply(r)
        if self.dead_records >= self._threshold:
            self.compact()

    def _rollback(self, offset: int) -> None:
        # Cut the fragment so the next record starts on a fresh line
        try:
            os.ftruncate(self._fh.fileno(), offset)
            os.fsync(self._fh.fileno())
        except OSError as ex:
            self._broken = True
            safe_log(
                self._log,
                logging.ERROR,
                "Box '%s': could not roll back partial write at byte %d: %s",
                self.name,
                offset,
                ex,
            )

    def put(self, key: str, value: Any) -> None:
        self._append([{"op": _OP_PUT, "k": key, "v": value}])

    def replace_all(self, entries: Mapping[str, Any]) -> None:
        """Clear and repopulate in one appended batch."""
        records = [{"op": _OP_CLEAR}]
        records.extend({"op": _OP_PUT, "k": k, "v": v} for k, v in entries.items())
        self._append(records)

    def put_all(self, entries: Mapping[str, Any]) -> None:
        records = [{"op": _OP_PUT, "k": k, "v": v} for k, v in entries.items()]
        if records:
            self._append(records)

    def delete(self, key: str) -> None:
        if key in self._data:
            self._append([{"op": _OP_DEL, "k": key}])

    def clear(self) -> None:
        self._append([{"op": _OP_CLEAR}])

    def compact(self) -> None:
        """Rewrite the log so it holds one put record per live key."""
        if self._fh is None:
            raise StorageIOError(f"Box '{self.name}' is closed")
        dead = self.dead_records
        tmp = self.path.with_name(f"{self.path.name}.tmp-{uuid4().hex}")
        try:
            with tmp.open("wb") as f:
                for k, v in self._data.items():
                    f.write(_encode_record({"op": _OP_PUT, "k": k, "v": v}))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as ex:
            tmp.unlink(missing_ok=True)
            raise StorageIOError(f"Failed to compact box '{self.name}'", cause=ex) from ex
        # The old handle points at the replaced inode
        self._fh.close()
        self._fh = self.path.open("ab", buffering=0)
        self._records = len(self._data)
        safe_log(self._log, logging.DEBUG, "Box '%s' compacted (%d dead records)", self.name, dead)

    # -------- Reads --------
    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def keys(self) -> List[str]:
        return list(self._data.keys())

    def items(self) -> List[Tuple[str, Any]]:
        return list(self._data.items())

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._data))

    # -------- Lifecycle --------
    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def delete_from_disk(self) -> None:
        self.close()
        self._data.clear()
        self._records = 0
        try:
            self.path.unlink(missing_ok=True)
        except OSError as ex:
            raise StorageIOError(f"Failed to delete box '{self.name}'", cause=ex) from ex


class S3Box:
    """
    Box persisted as a single JSON object in S3.

    - The object is read once on construction; a missing object is an empty box.
    - Every mutation rewrites the object. Writes after the first are
      conditional on the ETag last seen (copy-based compare-and-swap), so a
      concurrent writer surfaces as StorageIOError instead of a lost update.
    """

    def __init__(
        self,
        *,
        bucket: str,
        key: str,
        name: Optional[str] = None,
        s3: Optional[object] = None,
        region_name: Optional[str] = None,
    ) -> None:
        self.name = name or key
        self._bucket = bucket
        self._key = key
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._etag: Optional[str] = None
        self._data: Dict[str, Any] = self._read()

    def _read(self) -> Dict[str, Any]:
        try:
            resp = self._s3.get_object(Bucket=self._bucket, Key=self._key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                return {}
            raise StorageIOError(f"Failed to read box '{self.name}' from S3", cause=e) from e

        body = resp["Body"].read()
        self._etag = resp.get("ETag")
        try:
            data = json.loads(body.decode("utf-8"))
        except ValueError as ex:
            raise StorageIOError(f"Box '{self.name}' in S3 is not valid JSON", cause=ex) from ex
        if not isinstance(data, dict):
            raise StorageIOError(f"Box '{self.name}' in S3 is not a JSON object")
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        body = json.dumps(data, separators=(",", ":"), sort_keys=True).encode("utf-8")
        try:
            if self._etag is None:
                resp = self._s3.put_object(
                    Bucket=self._bucket,
                    Key=self._key,
                    Body=body,
                    ContentType="application/json",
                )
            else:
                resp = self._conditional_put(body, self._etag)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("PreconditionFailed", "412"):
                raise StorageIOError(
                    f"Box '{self.name}' was modified concurrently (ETag mismatch for "
                    f"s3://{self._bucket}/{self._key})",
                    cause=e,
                ) from e
            raise StorageIOError(f"Failed to write box '{self.name}' to S3", cause=e) from e
        self._etag = str(resp.get("ETag"))
        self._data = data

    def _conditional_put(self, body: bytes, if_match: str) -> Dict[str, Any]:
        # Upload to a temp key, then COPY over the destination with If-Match
        temp_key = f"{self._key}.tmp-{uuid4().hex}"
        self._s3.put_object(
            Bucket=self._bucket,
            Key=temp_key,
            Body=body,
            ContentType="application/json",
        )
        try:
            return self._s3.copy_object(
                Bucket=self._bucket,
                Key=self._key,
                CopySource={"Bucket": self._bucket, "Key": temp_key},
                IfMatch=if_match,
                MetadataDirective="COPY",
            )
        finally:
            try:
                self._s3.delete_object(Bucket=self._bucket, Key=temp_key)
            except ClientError as e:
                safe_log(logger, logging.WARNING, "Failed to delete temp object %s: %s", temp_key, e)

    def put(self, key: str, value: Any) -> None:
        data = dict(self._data)
        data[key] = value
        self._write(data)

    def put_all(self, entries: Mapping[str, Any]) -> None:
        if entries:
            data = dict(self._data)
            data.update(entries)
            self._write(data)

    def delete(self, key: str) -> None:
        if key in self._data:
            data = dict(self._data)
            del data[key]
            self._write(data)

    def clear(self) -> None:
        self._write({})

    def replace_all(self, entries: Mapping[str, Any]) -> None:
        self._write(dict(entries))

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def keys(self) -> List[str]:
        return list(self._data.keys())

    def items(self) -> List[Tuple[str, Any]]:
        return list(self._data.items())

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def close(self) -> None:
        pass
