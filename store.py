# Copyright (C) 2025 Fabian Valle-simmons
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

import os
import re
import time
import uuid
import logging
from typing import Optional, Dict, Any, List
from pymongo import MongoClient, DESCENDING
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError, PyMongoError

from languages import file_extension, language_from_file_name

logger = logging.getLogger(__name__)

FILES = "files"
ANALYSES = "analyses"
UNIT_TESTS = "unit_tests"
SESSIONS = "sessions"
SESSION_FILES = "session_files"

# Field each collection is ordered by for "newest first" queries
TIMESTAMP_FIELDS = {
    FILES: "uploaded_at",
    ANALYSES: "created_at",
    UNIT_TESTS: "created_at",
    SESSIONS: "updated_at",
    SESSION_FILES: "added_at",
}

RESULT_STATUSES = ("pending", "completed", "error")
SESSION_STATUSES = ("active", "completed", "archived")


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


class BaseStore:
    """
    Record-level operations shared by every backend.

    Subclasses only implement the storage primitives (`_insert`, `_get`,
    `_find`, `_update`, `_delete`, `_delete_many`). Cascading deletes are
    sequences of independent primitive calls: a failing child delete is
    logged and never blocks the delete of the parent record.
    """

    backend_name = "base"

    # --- primitives ---

    def _insert(self, kind: str, doc: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    def _get(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _find(self, kind: str, filters: Optional[Dict[str, Any]] = None, limit: Optional[int] = None,
              name_contains: Optional[str] = None) -> List[Dict[str, Any]]:
        """Matching records, newest first."""
        raise NotImplementedError

    def _update(self, kind: str, record_id: str, fields: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def _delete(self, kind: str, record_id: str) -> bool:
        raise NotImplementedError

    def _delete_many(self, kind: str, filters: Dict[str, Any]) -> int:
        raise NotImplementedError

    def _delete_children(self, kind: str, filters: Dict[str, Any], parent: str) -> None:
        try:
            removed = self._delete_many(kind, filters)
            logger.info(f"🧹 Removed {removed} {kind} record(s) belonging to {parent}")
        except Exception as e:
            logger.error(f"❌ Cascade delete of {kind} for {parent} failed, orphans may remain: {e}")

    # --- files ---

    def create_file(self, name: str, file_type: str, size: int, user_id: Optional[str] = None,
                    content: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return self._insert(FILES, {
            "name": name,
            "type": file_type,
            "size": size,
            "user_id": user_id,
            "uploaded_at": now_ms(),
            "content": content,
            "metadata": metadata or {},
        })

    def get_file(self, file_id: str) -> Optional[Dict[str, Any]]:
        return self._get(FILES, file_id)

    def list_user_files(self, user_id: Optional[str]) -> List[Dict[str, Any]]:
        if not user_id:
            return []
        return self._find(FILES, {"user_id": user_id})

    def list_recent_files(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self._find(FILES, limit=limit)

    def search_files(self, query: str, user_id: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        filters = {"user_id": user_id} if user_id else None
        return self._find(FILES, filters, limit=limit, name_contains=query or "")

    def update_file_metadata(self, file_id: str, metadata: Dict[str, Any]) -> bool:
        return self._update(FILES, file_id, {"metadata": metadata})

    def delete_file(self, file_id: str) -> bool:
        """Delete a file with its analyses, unit tests and session links."""
        parent = f"file {file_id}"
        self._delete_children(ANALYSES, {"file_id": file_id}, parent)
        self._delete_children(UNIT_TESTS, {"file_id": file_id}, parent)
        self._delete_children(SESSION_FILES, {"file_id": file_id}, parent)
        deleted = self._delete(FILES, file_id)
        if deleted:
            logger.info(f"🗑️ Deleted {parent}")
        return deleted

    # --- analyses ---

    def create_analysis(self, file_id: str, file_name: str, analysis: str = "", status: str = "pending",
                        user_id: Optional[str] = None) -> Optional[str]:
        if status not in RESULT_STATUSES:
            raise ValueError(f"Unknown analysis status: {status}")
        created = now_ms()
        return self._insert(ANALYSES, {
            "file_id": file_id,
            "file_name": file_name,
            "analysis": analysis,
            "status": status,
            "created_at": created,
            "completed_at": created if status != "pending" else None,
            "user_id": user_id,
        })

    def get_analysis(self, analysis_id: str) -> Optional[Dict[str, Any]]:
        return self._get(ANALYSES, analysis_id)

    def update_analysis(self, analysis_id: str, analysis: Optional[str] = None,
                        status: Optional[str] = None) -> bool:
        fields: Dict[str, Any] = {}
        if analysis is not None:
            fields["analysis"] = analysis
        if status is not None:
            if status not in RESULT_STATUSES:
                raise ValueError(f"Unknown analysis status: {status}")
            fields["status"] = status
            if status != "pending":
                fields["completed_at"] = now_ms()
        if not fields:
            return False
        return self._update(ANALYSES, analysis_id, fields)

    def list_file_analyses(self, file_id: str) -> List[Dict[str, Any]]:
        return self._find(ANALYSES, {"file_id": file_id})

    def list_user_analyses(self, user_id: Optional[str]) -> List[Dict[str, Any]]:
        if not user_id:
            return []
        return self._find(ANALYSES, {"user_id": user_id})

    def list_recent_analyses(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self._find(ANALYSES, limit=limit)

    def delete_analysis(self, analysis_id: str) -> bool:
        """Delete an analysis and the unit tests generated from it."""
        parent = f"analysis {analysis_id}"
        self._delete_children(UNIT_TESTS, {"analysis_id": analysis_id}, parent)
        deleted = self._delete(ANALYSES, analysis_id)
        if deleted:
            logger.info(f"🗑️ Deleted {parent}")
        return deleted

    # --- unit tests ---

    def create_unit_test(self, file_id: str, analysis_id: str, file_name: str, unit_tests: str = "",
                         status: str = "pending", user_id: Optional[str] = None) -> Optional[str]:
        if status not in RESULT_STATUSES:
            raise ValueError(f"Unknown unit test status: {status}")
        created = now_ms()
        return self._insert(UNIT_TESTS, {
            "file_id": file_id,
            "analysis_id": analysis_id,
            "file_name": file_name,
            "unit_tests": unit_tests,
            "status": status,
            "created_at": created,
            "completed_at": created if status != "pending" else None,
            "user_id": user_id,
        })

    def get_unit_test(self, unit_test_id: str) -> Optional[Dict[str, Any]]:
        return self._get(UNIT_TESTS, unit_test_id)

    def update_unit_test(self, unit_test_id: str, unit_tests: Optional[str] = None,
                         status: Optional[str] = None) -> bool:
        fields: Dict[str, Any] = {}
        if unit_tests is not None:
            fields["unit_tests"] = unit_tests
        if status is not None:
            if status not in RESULT_STATUSES:
                raise ValueError(f"Unknown unit test status: {status}")
            fields["status"] = status
            if status != "pending":
                fields["completed_at"] = now_ms()
        if not fields:
            return False
        return self._update(UNIT_TESTS, unit_test_id, fields)

    def list_file_unit_tests(self, file_id: str) -> List[Dict[str, Any]]:
        return self._find(UNIT_TESTS, {"file_id": file_id})

    def list_analysis_unit_tests(self, analysis_id: str) -> List[Dict[str, Any]]:
        return self._find(UNIT_TESTS, {"analysis_id": analysis_id})

    def list_user_unit_tests(self, user_id: Optional[str]) -> List[Dict[str, Any]]:
        if not user_id:
            return []
        return self._find(UNIT_TESTS, {"user_id": user_id})

    def list_recent_unit_tests(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self._find(UNIT_TESTS, limit=limit)

    def delete_unit_test(self, unit_test_id: str) -> bool:
        return self._delete(UNIT_TESTS, unit_test_id)

    # --- sessions ---

    def create_session(self, name: str, description: Optional[str] = None, user_id: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> Optional[str]:
        created = now_ms()
        return self._insert(SESSIONS, {
            "name": name,
            "description": description,
            "user_id": user_id,
            "created_at": created,
            "updated_at": created,
            "status": "active",
            "metadata": metadata or {},
        })

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self._get(SESSIONS, session_id)

    def update_session(self, session_id: str, name: Optional[str] = None, description: Optional[str] = None,
                       status: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> bool:
        fields: Dict[str, Any] = {"updated_at": now_ms()}
        if name is not None:
            fields["name"] = name
        if description is not None:
            fields["description"] = description
        if status is not None:
            if status not in SESSION_STATUSES:
                raise ValueError(f"Unknown session status: {status}")
            fields["status"] = status
        if metadata is not None:
            current = self.get_session(session_id)
            if current is None:
                return False
            fields["metadata"] = {**(current.get("metadata") or {}), **metadata}
        return self._update(SESSIONS, session_id, fields)

    def list_user_sessions(self, user_id: Optional[str], status: Optional[str] = None) -> List[Dict[str, Any]]:
        if not user_id:
            return []
        filters: Dict[str, Any] = {"user_id": user_id}
        if status:
            filters["status"] = status
        return self._find(SESSIONS, filters)

    def list_recent_sessions(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self._find(SESSIONS, limit=limit)

    def delete_session(self, session_id: str) -> bool:
        """Delete a session and its file links. The linked files themselves are kept."""
        parent = f"session {session_id}"
        self._delete_children(SESSION_FILES, {"session_id": session_id}, parent)
        deleted = self._delete(SESSIONS, session_id)
        if deleted:
            logger.info(f"🗑️ Deleted {parent}")
        return deleted

    # --- session/file links ---

    def _refresh_file_count(self, session_id: str) -> None:
        session = self.get_session(session_id)
        if session is None:
            return
        file_count = len(self._find(SESSION_FILES, {"session_id": session_id}))
        self._update(SESSIONS, session_id, {
            "updated_at": now_ms(),
            "metadata": {**(session.get("metadata") or {}), "file_count": file_count},
        })

    def add_file_to_session(self, session_id: str, file_id: str) -> Optional[str]:
        """Link a file to a session. Linking the same pair twice returns the existing link."""
        existing = self._find(SESSION_FILES, {"session_id": session_id, "file_id": file_id}, limit=1)
        if existing:
            return existing[0]["id"]
        link_id = self._insert(SESSION_FILES, {
            "session_id": session_id,
            "file_id": file_id,
            "added_at": now_ms(),
        })
        if link_id:
            self._refresh_file_count(session_id)
        return link_id

    def remove_file_from_session(self, session_id: str, file_id: str) -> bool:
        try:
            removed = self._delete_many(SESSION_FILES, {"session_id": session_id, "file_id": file_id})
        except Exception as e:
            logger.error(f"❌ Error unlinking file {file_id} from session {session_id}: {e}")
            return False
        if removed:
            self._refresh_file_count(session_id)
        return removed > 0

    def get_session_with_files(self, session_id: str) -> Optional[Dict[str, Any]]:
        """The session, its files, the latest analysis per file and the latest unit test per analysis."""
        session = self.get_session(session_id)
        if session is None:
            return None

        files, analyses, unit_tests = [], [], []
        for link in self._find(SESSION_FILES, {"session_id": session_id}):
            file = self.get_file(link["file_id"])
            if file is None:
                continue
            files.append({**file, "added_at": link["added_at"]})
            latest = self._find(ANALYSES, {"file_id": file["id"]}, limit=1)
            if not latest:
                continue
            analyses.append(latest[0])
            tests = self._find(UNIT_TESTS, {"analysis_id": latest[0]["id"]}, limit=1)
            if tests:
                unit_tests.append(tests[0])

        return {"session": session, "files": files, "analyses": analyses, "unit_tests": unit_tests}


class InMemoryStore(BaseStore):
    """In-memory fallback store when MongoDB is not available"""

    backend_name = "in-memory"

    def __init__(self):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {kind: {} for kind in TIMESTAMP_FIELDS}
        self._seq = 0

    def _insert(self, kind: str, doc: Dict[str, Any]) -> Optional[str]:
        record_id = new_id()
        self._seq += 1
        self.collections[kind][record_id] = {**doc, "id": record_id, "_seq": self._seq}
        logger.debug(f"💾 InMemoryStore: inserted {kind}/{record_id}")
        return record_id

    @staticmethod
    def _public(doc: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in doc.items() if k != "_seq"}

    def _get(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        doc = self.collections[kind].get(record_id)
        return self._public(doc) if doc else None

    def _find(self, kind: str, filters: Optional[Dict[str, Any]] = None, limit: Optional[int] = None,
              name_contains: Optional[str] = None) -> List[Dict[str, Any]]:
        ts_field = TIMESTAMP_FIELDS[kind]
        matches = [
            doc for doc in self.collections[kind].values()
            if all(doc.get(k) == v for k, v in (filters or {}).items())
            and (name_contains is None or name_contains.lower() in str(doc.get("name", "")).lower())
        ]
        # Same-millisecond inserts keep insertion order, newest first
        matches.sort(key=lambda d: (d.get(ts_field) or 0, d["_seq"]), reverse=True)
        if limit is not None:
            matches = matches[:limit]
        return [self._public(doc) for doc in matches]

    def _update(self, kind: str, record_id: str, fields: Dict[str, Any]) -> bool:
        doc = self.collections[kind].get(record_id)
        if doc is None:
            return False
        doc.update(fields)
        return True

    def _delete(self, kind: str, record_id: str) -> bool:
        return self.collections[kind].pop(record_id, None) is not None

    def _delete_many(self, kind: str, filters: Dict[str, Any]) -> int:
        doomed = [
            record_id for record_id, doc in self.collections[kind].items()
            if all(doc.get(k) == v for k, v in filters.items())
        ]
        for record_id in doomed:
            del self.collections[kind][record_id]
        return len(doomed)


class MongoStore(BaseStore):
    """MongoDB-backed record store. Read/write failures are logged and reported as None/False/[]."""

    backend_name = "MongoDB"

    def __init__(self, mongo_uri: Optional[str] = None, database: Optional[str] = None,
                 client: Optional[MongoClient] = None):
        """
        Args:
            mongo_uri: MongoDB connection URI. If None, reads from MONGODB_URI env var.
                     Falls back to mongodb://localhost:27017 if not set.
            database: Database name. If None, reads MONGODB_DATABASE (default "codemarshall").
            client: An already constructed client, used as-is.
        """
        self.mongo_uri = mongo_uri or os.getenv("MONGODB_URI", "mongodb://localhost:27017")
        self.database_name = database or os.getenv("MONGODB_DATABASE", "codemarshall")
        self.client = client
        self.db = None
        self._connect()

    def _connect(self):
        """Establish MongoDB connection"""
        try:
            if self.client is None:
                self.client = MongoClient(
                    self.mongo_uri,
                    serverSelectionTimeoutMS=5000,
                    connectTimeoutMS=5000
                )
            self.client.admin.command('ping')
            self.db = self.client.get_database(self.database_name)

            self.db[FILES].create_index("user_id")
            self.db[FILES].create_index([("uploaded_at", DESCENDING)])
            self.db[ANALYSES].create_index("file_id")
            self.db[ANALYSES].create_index("user_id")
            self.db[ANALYSES].create_index([("created_at", DESCENDING)])
            self.db[UNIT_TESTS].create_index("file_id")
            self.db[UNIT_TESTS].create_index("analysis_id")
            self.db[UNIT_TESTS].create_index("user_id")
            self.db[UNIT_TESTS].create_index([("created_at", DESCENDING)])
            self.db[SESSIONS].create_index([("user_id", 1), ("status", 1)])
            self.db[SESSIONS].create_index([("updated_at", DESCENDING)])
            self.db[SESSION_FILES].create_index("session_id")
            self.db[SESSION_FILES].create_index("file_id")
            self.db[SESSION_FILES].create_index([("session_id", 1), ("file_id", 1)], unique=True)

            logger.info(f"✅ Connected to MongoDB store ({self.database_name})")
        except (ConnectionFailure, ServerSelectionTimeoutError) as e:
            logger.warning(f"⚠️ Could not connect to MongoDB: {e}. Store will be disabled.")
            self.db = None
        except PyMongoError as e:
            logger.error(f"❌ Error initializing MongoDB store: {e}")
            self.db = None

    def _is_connected(self) -> bool:
        """Check if MongoDB connection is active"""
        if self.client is None or self.db is None:
            return False
        try:
            self.client.admin.command('ping')
            return True
        except PyMongoError:
            return False

    @staticmethod
    def _public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if doc is None:
            return None
        doc = dict(doc)
        doc["id"] = doc.pop("_id")
        return doc

    @staticmethod
    def _query(filters: Optional[Dict[str, Any]], name_contains: Optional[str]) -> Dict[str, Any]:
        query = dict(filters or {})
        if name_contains is not None:
            query["name"] = {"$regex": re.escape(name_contains), "$options": "i"}
        return query

    def _insert(self, kind: str, doc: Dict[str, Any]) -> Optional[str]:
        if self.db is None:
            return None
        record_id = new_id()
        try:
            self.db[kind].insert_one({**doc, "_id": record_id})
        except PyMongoError as e:
            logger.error(f"❌ Error inserting {kind} record: {e}")
            return None
        logger.debug(f"💾 MongoStore: inserted {kind}/{record_id}")
        return record_id

    def _get(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        if self.db is None:
            return None
        try:
            return self._public(self.db[kind].find_one({"_id": record_id}))
        except PyMongoError as e:
            logger.error(f"❌ Error reading {kind}/{record_id}: {e}")
            return None

    def _find(self, kind: str, filters: Optional[Dict[str, Any]] = None, limit: Optional[int] = None,
              name_contains: Optional[str] = None) -> List[Dict[str, Any]]:
        if self.db is None:
            return []
        try:
            cursor = self.db[kind].find(self._query(filters, name_contains)).sort(TIMESTAMP_FIELDS[kind], DESCENDING)
            if limit is not None:
                cursor = cursor.limit(limit)
            return [self._public(doc) for doc in cursor]
        except PyMongoError as e:
            logger.error(f"❌ Error querying {kind}: {e}")
            return []

    def _update(self, kind: str, record_id: str, fields: Dict[str, Any]) -> bool:
        if self.db is None:
            return False
        try:
            result = self.db[kind].update_one({"_id": record_id}, {"$set": fields})
            return result.matched_count > 0
        except PyMongoError as e:
            logger.error(f"❌ Error updating {kind}/{record_id}: {e}")
            return False

    def _delete(self, kind: str, record_id: str) -> bool:
        if self.db is None:
            return False
        try:
            return self.db[kind].delete_one({"_id": record_id}).deleted_count > 0
        except PyMongoError as e:
            logger.error(f"❌ Error deleting {kind}/{record_id}: {e}")
            return False

    def _delete_many(self, kind: str, filters: Dict[str, Any]) -> int:
        # Errors propagate so cascades can log them as potential orphans
        if self.db is None:
            raise ConnectionFailure("MongoDB store is not connected")
        return self.db[kind].delete_many(filters).deleted_count


class IntelligentStore(BaseStore):
    """
    Store wrapper that uses MongoDB if available, falls back to in-memory storage.
    The connection is re-checked on every operation.
    """

    def __init__(self, mongo_uri: Optional[str] = None, database: Optional[str] = None):
        self.mongo_store = MongoStore(mongo_uri, database)
        self.memory_store = InMemoryStore()
        self._use_mongo = self.mongo_store._is_connected()

        if self._use_mongo:
            logger.info("🚀 Using MongoDB store (persistent)")
        else:
            logger.info("💾 Using in-memory store (MongoDB not available)")

    @property
    def backend_name(self) -> str:
        return "MongoDB" if self._use_mongo else "in-memory"

    def _active(self) -> BaseStore:
        """Get the active store backend"""
        if self.mongo_store._is_connected():
            if not self._use_mongo:
                logger.info("🔄 MongoDB connection restored, switching to MongoDB store")
                self._use_mongo = True
            return self.mongo_store
        if self._use_mongo:
            logger.warning("⚠️ MongoDB connection lost, falling back to in-memory store")
            self._use_mongo = False
        return self.memory_store

    def _insert(self, kind: str, doc: Dict[str, Any]) -> Optional[str]:
        return self._active()._insert(kind, doc)

    def _get(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self._active()._get(kind, record_id)

    def _find(self, kind: str, filters: Optional[Dict[str, Any]] = None, limit: Optional[int] = None,
              name_contains: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._active()._find(kind, filters, limit, name_contains)

    def _update(self, kind: str, record_id: str, fields: Dict[str, Any]) -> bool:
        return self._active()._update(kind, record_id, fields)

    def _delete(self, kind: str, record_id: str) -> bool:
        return self._active()._delete(kind, record_id)

    def _delete_many(self, kind: str, filters: Dict[str, Any]) -> int:
        return self._active()._delete_many(kind, filters)


def file_metadata(name: str, content: str) -> Dict[str, Any]:
    """Language, extension, line and character counts recorded for an uploaded file."""
    return {
        "language": language_from_file_name(name),
        "extension": file_extension(name).lstrip(".").lower(),
        "lines": len(content.split("\n")) if content else 0,
        "characters": len(content or ""),
    }
