#!/usr/bin/env python
#
"""
A small filesystem object store for received list messages.

Objects live at `<root>/<namespace>/<key>` with their metadata in a
`<key>.meta.json` file next to them. Both are written to a temporary file
and renamed in to place so a reader never sees a partial object.
"""
# system imports
#
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

# 3rd party imports
#
from django.conf import settings
from pydantic import BaseModel

logger = logging.getLogger("listmail.storage")


########################################################################
########################################################################
#
class ObjectInfo(BaseModel):
    namespace: str
    key: str
    content_type: str
    size: int
    headers: Dict[str, str] = {}


########################################################################
########################################################################
#
class MessageStore:
    META_SUFFIX = ".meta.json"

    ####################################################################
    #
    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    ####################################################################
    #
    def _path(self, namespace: str, key: str) -> Path:
        for part in (namespace, key):
            if not part or "/" in part or part in (".", ".."):
                raise ValueError(f"Invalid object path component '{part}'")
        return self.root / namespace / key

    ####################################################################
    #
    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        # Concurrent writers of the same object each get their own temporary
        # file. Whichever rename lands last wins.
        #
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".new"
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    ####################################################################
    #
    def put(
        self,
        namespace: str,
        key: str,
        content_type: str,
        size: int,
        headers: Optional[Dict[str, str]],
        body: bytes,
    ) -> None:
        """
        Store `body` under (namespace, key), replacing anything already
        there.
        """
        if size != len(body):
            raise ValueError(
                f"Object size mismatch for {namespace}/{key}: "
                f"{size} != {len(body)}"
            )
        path = self._path(namespace, key)
        path.parent.mkdir(parents=True, exist_ok=True)

        info = ObjectInfo(
            namespace=namespace,
            key=key,
            content_type=content_type,
            size=size,
            headers=headers or {},
        )
        # The body goes last. If it exists its metadata does too.
        #
        self._write_atomic(
            path.with_name(path.name + self.META_SUFFIX),
            info.model_dump_json().encode("utf-8"),
        )
        self._write_atomic(path, body)
        logger.debug("Stored %s/%s (%d bytes)", namespace, key, size)

    ####################################################################
    #
    def get(self, namespace: str, key: str) -> Tuple[ObjectInfo, bytes]:
        """
        Raises FileNotFoundError if there is no such object.
        """
        path = self._path(namespace, key)
        body = path.read_bytes()
        meta = json.loads(
            path.with_name(path.name + self.META_SUFFIX).read_text()
        )
        return ObjectInfo(**meta), body

    ####################################################################
    #
    def exists(self, namespace: str, key: str) -> bool:
        return self._path(namespace, key).exists()


####################################################################
#
def message_store() -> MessageStore:
    return MessageStore(settings.LISTMAIL_MESSAGE_STORE_DIR)
