"""
NoSQL adapter for document-based operations.
Stores controller state as JSON documents in SQLite tables, one table per collection.
"""

import sqlite3
import json
import logging
from typing import Dict, Any, List, Optional, Tuple
from datetime import datetime
from .schemas import DOCUMENT_VALIDATORS

logger = logging.getLogger(__name__)


# Primary key column per collection, plus extra indexed columns copied out of the document
COLLECTION_KEYS = {
    'deployments': 'deployment_id',
    'services': 'service_name',
    'clusters': 'cluster_name',
}

COLLECTION_COLUMNS = {
    'deployments': ['service_name', 'time'],
    'services': [],
    'clusters': [],
}


class NoSQLAdapter:
    """Adapter for document-based database operations"""

    def __init__(self, db_path: str = "ecs_deploy.db"):
        self.db_path = db_path

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with JSON support"""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _key_column(self, collection: str) -> str:
        if collection not in COLLECTION_KEYS:
            raise ValueError(f"Unknown collection: {collection}")
        return COLLECTION_KEYS[collection]

    def _validate_document(self, collection: str, document: Dict[str, Any]) -> None:
        """Validate document against schema"""
        if collection in DOCUMENT_VALIDATORS:
            try:
                DOCUMENT_VALIDATORS[collection](document)
            except Exception as e:
                logger.error(f"Document validation failed for {collection}: {e}")
                raise ValueError(f"Document validation failed: {e}") from e

    def _serialize_document(self, document: Dict[str, Any]) -> str:
        """Serialize document to JSON string"""
        def json_serializer(obj):
            if isinstance(obj, datetime):
                return obj.isoformat()
            raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

        return json.dumps(document, default=json_serializer)

    def _deserialize_document(self, json_str: str) -> Dict[str, Any]:
        """Deserialize JSON string to document"""
        return json.loads(json_str)

    def _row_values(self, collection: str, document: Dict[str, Any]) -> List[Any]:
        key = self._key_column(collection)
        return [document[key]] + [document.get(col) for col in COLLECTION_COLUMNS[collection]]

    def _where_clause(self, collection: str, query: Optional[Dict[str, Any]]) -> Tuple[str, List[Any]]:
        """Build a WHERE clause from an equality query on document fields"""
        if not query:
            return "", []
        key = self._key_column(collection)
        where_clauses = []
        params = []
        for field, value in query.items():
            if field == '_id':
                where_clauses.append(f"{key} = ?")
                params.append(value)
            elif field in COLLECTION_COLUMNS[collection]:
                where_clauses.append(f"{field} = ?")
                params.append(value)
            else:
                where_clauses.append("json_extract(document, ?) = ?")
                params.extend([f"$.{field}", value])
        return " WHERE " + " AND ".join(where_clauses), params

    def init_collections(self) -> None:
        """Initialize document collections (tables)"""
        conn = self._get_connection()
        try:
            cursor = conn.cursor()

            # Deployment history, keyed by "<service>/<time>"
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS deployments_docs (
                    deployment_id TEXT PRIMARY KEY,
                    service_name TEXT NOT NULL,
                    time TEXT NOT NULL,
                    document TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS services_docs (
                    service_name TEXT PRIMARY KEY,
                    document TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            # One resource snapshot per cluster
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS clusters_docs (
                    cluster_name TEXT PRIMARY KEY,
                    document TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            self._create_basic_indexes(cursor)

            conn.commit()
            logger.info("NoSQL collections initialized successfully")

        except Exception as e:
            logger.error(f"Error initializing collections: {e}")
            raise
        finally:
            conn.close()

    def _create_basic_indexes(self, cursor: sqlite3.Cursor) -> None:
        """Create basic indexes for document queries"""
        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_deployment_service_time
            ON deployments_docs(service_name, time)
        ''')
        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_deployment_time
            ON deployments_docs(time)
        ''')
        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_deployment_status
            ON deployments_docs(json_extract(document, '$.status'))
        ''')
        cursor.execute('''
            CREATE INDEX IF NOT EXISTS idx_service_cluster
            ON services_docs(json_extract(document, '$.cluster_name'))
        ''')

    def create_document(self, collection: str, document: Dict[str, Any]) -> str:
        """Create a new document in the collection"""
        key = self._key_column(collection)
        self._validate_document(collection, document)
        columns = [key] + COLLECTION_COLUMNS[collection] + ['document']
        placeholders = ", ".join("?" for _ in columns)

        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                f"INSERT INTO {collection}_docs ({', '.join(columns)}) VALUES ({placeholders})",
                self._row_values(collection, document) + [self._serialize_document(document)]
            )
            conn.commit()
            doc_id = document[key]
            logger.info(f"Created document in {collection} with ID: {doc_id}")
            return doc_id

        except Exception as e:
            logger.error(f"Error creating document in {collection}: {e}")
            raise
        finally:
            conn.close()

    def put_document(self, collection: str, document: Dict[str, Any]) -> str:
        """Insert or replace a document, keeping its creation time"""
        key = self._key_column(collection)
        self._validate_document(collection, document)
        columns = [key] + COLLECTION_COLUMNS[collection] + ['document']
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{col} = excluded.{col}" for col in columns[1:])

        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                f'''
                INSERT INTO {collection}_docs ({', '.join(columns)}) VALUES ({placeholders})
                ON CONFLICT({key}) DO UPDATE SET {updates}, updated_at = CURRENT_TIMESTAMP
                ''',
                self._row_values(collection, document) + [self._serialize_document(document)]
            )
            conn.commit()
            logger.debug(f"Stored document in {collection} with ID: {document[key]}")
            return document[key]

        except Exception as e:
            logger.error(f"Error storing document in {collection}: {e}")
            raise
        finally:
            conn.close()

    def get_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Get a document by ID"""
        key = self._key_column(collection)
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(f'SELECT document FROM {collection}_docs WHERE {key} = ?', (doc_id,))
            row = cursor.fetchone()
            if row:
                return self._deserialize_document(row['document'])
            return None

        except Exception as e:
            logger.error(f"Error getting document from {collection}: {e}")
            raise
        finally:
            conn.close()

    def update_document(self, collection: str, doc_id: str, document: Dict[str, Any]) -> bool:
        """Update a document by ID"""
        return self._update(collection, doc_id, document)

    def update_document_if(self, collection: str, doc_id: str, document: Dict[str, Any],
                           field: str, expected: Any) -> bool:
        """Update a document only while one of its fields still holds the expected value.

        Returns False when the document is missing or the field has moved on.
        """
        return self._update(collection, doc_id, document, condition=(field, expected))

    def _update(self, collection: str, doc_id: str, document: Dict[str, Any], condition=None) -> bool:
        key = self._key_column(collection)
        self._validate_document(collection, document)
        extra_columns = COLLECTION_COLUMNS[collection]
        assignments = "".join(f", {col} = ?" for col in extra_columns)
        sql = f"UPDATE {collection}_docs SET document = ?{assignments}, updated_at = CURRENT_TIMESTAMP WHERE {key} = ?"
        params = [self._serialize_document(document)] + [document.get(col) for col in extra_columns] + [doc_id]
        if condition:
            sql += " AND json_extract(document, ?) = ?"
            params.extend([f"$.{condition[0]}", condition[1]])

        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(sql, params)
            success = cursor.rowcount > 0
            conn.commit()

            if success:
                logger.debug(f"Updated document in {collection} with ID: {doc_id}")
            else:
                logger.debug(f"No document updated in {collection} with ID: {doc_id}")
            return success

        except Exception as e:
            logger.error(f"Error updating document in {collection}: {e}")
            raise
        finally:
            conn.close()

    def delete_document(self, collection: str, doc_id: str) -> bool:
        """Delete a document by ID"""
        key = self._key_column(collection)
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(f'DELETE FROM {collection}_docs WHERE {key} = ?', (doc_id,))
            success = cursor.rowcount > 0
            conn.commit()
            if success:
                logger.info(f"Deleted document from {collection} with ID: {doc_id}")
            return success

        except Exception as e:
            logger.error(f"Error deleting document from {collection}: {e}")
            raise
        finally:
            conn.close()

    def query_documents(self, collection: str, query: Dict[str, Any] = None,
                        order_by: str = None, descending: bool = False,
                        limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        """Query documents by field equality.

        Args:
            collection: Collection name
            query: Field/value pairs; dotted names address nested fields
            order_by: Field to sort on
            descending: Sort direction
            limit: Maximum number of documents
            offset: Number of documents to skip
        """
        where, params = self._where_clause(collection, query)
        sql = f"SELECT document FROM {collection}_docs{where}"
        sql += self._order_clause(collection, order_by, descending, params)
        sql += " LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(sql, params)
            return [self._deserialize_document(row['document']) for row in cursor.fetchall()]

        except Exception as e:
            logger.error(f"Error querying documents from {collection}: {e}")
            raise
        finally:
            conn.close()

    def query_time_range(self, collection: str, start: str, end: str = None,
                         query: Dict[str, Any] = None, time_field: str = 'time',
                         descending: bool = True, limit: int = 100) -> List[Dict[str, Any]]:
        """Query documents whose time field falls in [start, end)"""
        where, params = self._where_clause(collection, query)
        clauses = [f"{self._field_expression(collection, time_field, params)} >= ?"]
        params.append(start)
        if end is not None:
            clauses.append(f"{self._field_expression(collection, time_field, params)} < ?")
            params.append(end)
        where = (where + " AND " if where else " WHERE ") + " AND ".join(clauses)
        sql = f"SELECT document FROM {collection}_docs{where}"
        sql += self._order_clause(collection, time_field, descending, params)
        sql += " LIMIT ?"
        params.append(limit)

        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(sql, params)
            return [self._deserialize_document(row['document']) for row in cursor.fetchall()]

        except Exception as e:
            logger.error(f"Error querying time range from {collection}: {e}")
            raise
        finally:
            conn.close()

    def count_documents(self, collection: str, query: Dict[str, Any] = None) -> int:
        """Count documents matching query"""
        where, params = self._where_clause(collection, query)
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(f"SELECT COUNT(*) as count FROM {collection}_docs{where}", params)
            return cursor.fetchone()['count']

        except Exception as e:
            logger.error(f"Error counting documents in {collection}: {e}")
            raise
        finally:
            conn.close()

    def _field_expression(self, collection: str, field: str, params: List[Any]) -> str:
        if field in COLLECTION_COLUMNS[collection] or field == self._key_column(collection):
            return field
        params.append(f"$.{field}")
        return "json_extract(document, ?)"

    def _order_clause(self, collection: str, order_by: Optional[str], descending: bool,
                      params: List[Any]) -> str:
        if not order_by:
            return ""
        expression = self._field_expression(collection, order_by, params)
        return f" ORDER BY {expression} {'DESC' if descending else 'ASC'}"
