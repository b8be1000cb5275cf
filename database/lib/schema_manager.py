"""Database schema management module.

Each collection lives in its own table holding a JSONB document per row. Schema
files under ``database/schema/vN.py`` describe those tables and the indexes over
document fields; this module tracks which version is applied and creates or
migrates tables to the latest one.
"""
import importlib
import logging
from pathlib import Path
from typing import Dict, Any, Optional

from ..exceptions import DatabaseSchemaError

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent.parent / 'schema'

def load_schema_files(schema_dir: Optional[Path] = None) -> Dict[int, Dict[str, Any]]:
    """Load all schema version files.

    Args:
        schema_dir: Directory holding vN.py files, defaults to database/schema

    Returns:
        Dict mapping version numbers to schema definitions, in version order

    Raises:
        DatabaseSchemaError: If a schema file is malformed
    """
    schema_dir = schema_dir or SCHEMA_DIR
    schema_files = {}

    if not schema_dir.exists():
        return schema_files

    for file in schema_dir.glob('v*.py'):
        try:
            version = int(file.stem[1:])
        except ValueError:
            logger.warning(f"Invalid schema filename: {file}")
            continue

        module = importlib.import_module(f"database.schema.{file.stem}")
        if not hasattr(module, 'schema'):
            raise DatabaseSchemaError(f"Schema file {file} missing 'schema' definition")

        schema = module.schema
        if schema['version'] != version:
            raise DatabaseSchemaError(
                f"Schema version mismatch in {file}: "
                f"Expected v{version}, got v{schema['version']}"
            )
        schema_files[version] = schema

    return dict(sorted(schema_files.items()))

def latest_schema() -> Dict[str, Any]:
    """Return the newest schema definition."""
    schema_files = load_schema_files()
    if not schema_files:
        raise DatabaseSchemaError("No valid schema files found in schema directory")
    return schema_files[max(schema_files)]

def unique_index_fields(schema: Dict[str, Any]) -> Dict[str, Dict[str, str]]:
    """Map each table's unique index names to the document field they cover.

    Returns:
        {table_name: {index_name: field}}
    """
    result: Dict[str, Dict[str, str]] = {}
    for table in schema.get('tables', []):
        result[table['name']] = {
            idx['name']: idx.get('field', idx['name'])
            for idx in table.get('indexes', [])
            if idx.get('unique')
        }
    return result

class SchemaManager:
    """Manages database schema versioning and migrations."""

    def __init__(self, pool, schema_dir: Optional[Path] = None) -> None:
        """Initialize schema manager.

        Args:
            pool: Database connection pool
            schema_dir: Directory containing schema version files
        """
        self.pool = pool
        self._schema_dir = schema_dir
        self.current_version = 0

    async def initialize(self) -> None:
        """Create the version table if needed and apply pending migrations.

        Raises:
            DatabaseSchemaError: If schema initialization fails or no valid schema files are found
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute('''
                    CREATE TABLE IF NOT EXISTS schema_version (
                        version INT8 PRIMARY KEY,
                        applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                ''')
                row = await conn.fetchrow(
                    'SELECT version FROM schema_version ORDER BY version DESC LIMIT 1'
                )
                self.current_version = row['version'] if row else 0

            schema_files = load_schema_files(self._schema_dir)
            if not schema_files:
                raise DatabaseSchemaError("No valid schema files found in schema directory")

            await self._apply_migrations(schema_files)

        except DatabaseSchemaError:
            raise
        except Exception as e:
            logger.error(f"Schema initialization failed: {e}")
            raise DatabaseSchemaError(f"Failed to initialize schema: {e}")

    async def _apply_migrations(self, schema_files: Dict[int, Dict[str, Any]]) -> None:
        latest_version = max(schema_files)
        if self.current_version >= latest_version:
            logger.info("Schema is up to date")
            return

        logger.info(f"Updating schema from version {self.current_version} to {latest_version}")

        async with self.pool.acquire() as conn:
            if self.current_version == 0:
                schema = schema_files[latest_version]
                for table in schema.get('tables', []):
                    await self._create_table(conn, table)
                    await self._create_indexes(conn, table)
                await conn.execute('INSERT INTO schema_version (version) VALUES ($1)', latest_version)
                logger.info(f"Created schema version {latest_version}")
                return

            for version in range(self.current_version + 1, latest_version + 1):
                if version not in schema_files:
                    continue
                for migration in schema_files[version].get('migrations', []):
                    await conn.execute(migration)
                await conn.execute('INSERT INTO schema_version (version) VALUES ($1)', version)
                logger.info(f"Successfully migrated to version {version}")

    async def _create_table(self, conn, table: Dict[str, Any]) -> None:
        columns = []
        for col in table['columns']:
            col_def = f"{col['name']} {col['type']}"
            if col.get('primary_key'):
                col_def += " PRIMARY KEY"
            if 'default' in col:
                col_def += f" DEFAULT {col['default']}"
            if col.get('nullable') is False:
                col_def += " NOT NULL"
            columns.append(col_def)

        await conn.execute(
            f"CREATE TABLE IF NOT EXISTS {table['name']} ({', '.join(columns)})"
        )
        logger.info(f"Created table {table['name']}")

    async def _create_indexes(self, conn, table: Dict[str, Any]) -> None:
        for idx in table.get('indexes', []):
            unique = 'UNIQUE ' if idx.get('unique') else ''
            where = f" WHERE {idx['where']}" if 'where' in idx else ''
            await conn.execute(
                f"CREATE {unique}INDEX IF NOT EXISTS {idx['name']} "
                f"ON {table['name']} ({', '.join(idx['columns'])}){where}"
            )
            logger.info(f"Created index {idx['name']} on {table['name']}")
