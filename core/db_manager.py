# core/db_manager.py
import asyncio
from typing import Any

import structlog
from neo4j import (  # type: ignore
    GraphDatabase,
    ManagedTransaction,
)
from neo4j.exceptions import ServiceUnavailable  # type: ignore

import config
from core.exceptions import (
    DatabaseConnectionError,
    DatabaseTransactionError,
    handle_database_error,
)

logger = structlog.get_logger(__name__)

SCHEMA_CONSTRAINTS: tuple[str, ...] = (
    "CREATE CONSTRAINT novel_id_unique IF NOT EXISTS FOR (n:Novel) REQUIRE n.id IS UNIQUE",
    "CREATE CONSTRAINT chapter_id_unique IF NOT EXISTS FOR (c:Chapter) REQUIRE c.id IS UNIQUE",
    "CREATE CONSTRAINT chapter_version_id_unique IF NOT EXISTS FOR (v:ChapterVersion) REQUIRE v.id IS UNIQUE",
    "CREATE CONSTRAINT hook_id_unique IF NOT EXISTS FOR (h:NarrativeHook) REQUIRE h.id IS UNIQUE",
    "CREATE CONSTRAINT pending_entity_id_unique IF NOT EXISTS FOR (p:PendingEntity) REQUIRE p.id IS UNIQUE",
    "CREATE CONSTRAINT agent_id_unique IF NOT EXISTS FOR (a:AgentProfile) REQUIRE a.id IS UNIQUE",
    "CREATE CONSTRAINT summary_key_unique IF NOT EXISTS FOR (s:ChapterSummary) REQUIRE (s.novel_id, s.chapter_number) IS UNIQUE",
)

SCHEMA_INDEXES: tuple[str, ...] = (
    "CREATE INDEX chapter_novel_order IF NOT EXISTS FOR (c:Chapter) ON (c.novel_id, c.order)",
    "CREATE INDEX hook_novel_status IF NOT EXISTS FOR (h:NarrativeHook) ON (h.novel_id, h.status)",
    "CREATE INDEX pending_entity_novel_status IF NOT EXISTS FOR (p:PendingEntity) ON (p.novel_id, p.status)",
    "CREATE INDEX chapter_version_branch IF NOT EXISTS FOR (v:ChapterVersion) ON (v.chapter_id, v.is_branch)",
)


class Neo4jManagerSingleton:
    _instance = None

    def __new__(cls, *args, **kwargs):
        if not cls._instance:
            cls._instance = super().__new__(cls)
            cls._instance._initialized_flag = False
        return cls._instance

    def __init__(self):
        if self._initialized_flag:
            return

        self.logger = structlog.get_logger(__name__)
        self.driver: Any = None
        self._initialized_flag = True
        self.logger.info("Neo4jManagerSingleton initialized. Call connect() to establish connection.")

    async def connect(self):
        """Establish a synchronous Neo4j driver and verify connectivity."""
        if self.driver:
            await self.close()

        try:
            sync_driver = GraphDatabase.driver(config.NEO4J_URI, auth=(config.NEO4J_USER, config.NEO4J_PASSWORD))
            await asyncio.to_thread(sync_driver.verify_connectivity)
            self.driver = sync_driver
            self.logger.info("Connected to Neo4j", uri=config.NEO4J_URI)
        except ServiceUnavailable as e:
            self.logger.critical("Neo4j service unavailable", uri=config.NEO4J_URI, error=str(e))
            self.driver = None
            raise DatabaseConnectionError(
                "Neo4j database is not available",
                details={
                    "uri": config.NEO4J_URI,
                    "original_error": str(e),
                    "suggestion": "Ensure the Neo4j database is running and accessible",
                },
            ) from e
        except Exception as e:
            self.logger.critical(
                "Unexpected error during Neo4j connection",
                uri=config.NEO4J_URI,
                error=str(e),
                exc_info=True,
            )
            self.driver = None
            raise handle_database_error("connection", e, uri=config.NEO4J_URI) from e

    async def close(self):
        if self.driver:
            try:
                await asyncio.to_thread(self.driver.close)
                self.logger.info("Neo4j driver closed.")
            except Exception as e:
                self.logger.error("Error while closing Neo4j driver", error=str(e), exc_info=True)
            finally:
                self.driver = None
        else:
            self.logger.info("No active Neo4j driver to close (driver was None).")

    async def _ensure_connected(self):
        if self.driver is None:
            self.logger.info("Driver is None, attempting to connect.")
            await self.connect()

        if self.driver is None:
            raise DatabaseConnectionError(
                "Neo4j driver not initialized",
                details={"suggestion": "Call connect() method first to establish database connection"},
            )

    def _ensure_connected_sync(self):
        if self.driver is None:
            raise DatabaseConnectionError(
                "Neo4j driver not initialized (synchronous helper called without connection)",
                details={},
            )

    # -------------------------------------------------------------------------
    # Synchronous helpers (run in a worker thread)
    # -------------------------------------------------------------------------

    def _sync_execute_query_tx(
        self,
        tx: ManagedTransaction,
        query: str,
        parameters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        self.logger.debug("Executing Cypher query", query=query, parameters=parameters)
        result_cursor = tx.run(query, parameters or {})
        return [record.data() for record in result_cursor]

    def _sync_execute_read_query(self, query: str, parameters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        self._ensure_connected_sync()
        with self.driver.session(database=config.NEO4J_DATABASE) as session:
            return session.execute_read(self._sync_execute_query_tx, query, parameters)

    def _sync_execute_write_query(self, query: str, parameters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        self._ensure_connected_sync()
        with self.driver.session(database=config.NEO4J_DATABASE) as session:
            return session.execute_write(self._sync_execute_query_tx, query, parameters)

    def _sync_execute_cypher_batch(self, cypher_statements_with_params: list[tuple[str, dict[str, Any]]]) -> None:
        if not cypher_statements_with_params:
            self.logger.info("execute_cypher_batch: No statements to execute.")
            return

        self._ensure_connected_sync()
        with self.driver.session(database=config.NEO4J_DATABASE) as session:
            tx = session.begin_transaction()
            try:
                for query, params in cypher_statements_with_params:
                    self.logger.debug("Batch Cypher", query=query, parameters=params)
                    tx.run(query, params)
                tx.commit()
                self.logger.info(
                    "execute_cypher_batch: committed",
                    statements=len(cypher_statements_with_params),
                )
            except Exception as e:
                self.logger.error(
                    "Error in Cypher batch execution",
                    batch_size=len(cypher_statements_with_params),
                    error=str(e),
                    exc_info=True,
                )
                if not tx.closed():
                    tx.rollback()
                raise DatabaseTransactionError(
                    "Batch Cypher execution failed",
                    details={
                        "batch_size": len(cypher_statements_with_params),
                        "original_error": str(e),
                        "operation": "batch_execution",
                    },
                ) from e

    # -------------------------------------------------------------------------
    # Public async API
    # -------------------------------------------------------------------------

    async def execute_read_query(self, query: str, parameters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        await self._ensure_connected()
        return await asyncio.to_thread(self._sync_execute_read_query, query, parameters)

    async def execute_write_query(self, query: str, parameters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        await self._ensure_connected()
        return await asyncio.to_thread(self._sync_execute_write_query, query, parameters)

    async def execute_cypher_batch(self, cypher_statements_with_params: list[tuple[str, dict[str, Any]]]) -> None:
        """Run every statement in one transaction; all or nothing."""
        await self._ensure_connected()
        await asyncio.to_thread(self._sync_execute_cypher_batch, cypher_statements_with_params)

    async def create_db_schema(self) -> None:
        """Create constraints and indexes, falling back to one statement at a time."""
        queries = list(SCHEMA_CONSTRAINTS + SCHEMA_INDEXES)
        self.logger.info("Creating/verifying Neo4j schema elements", count=len(queries))
        try:
            await self.execute_cypher_batch([(query, {}) for query in queries])
        except DatabaseTransactionError as e:
            self.logger.error("Schema batch failed; applying individually", error=str(e))
            for query in queries:
                try:
                    await self.execute_write_query(query)
                except Exception as individual_e:
                    self.logger.warning(
                        "Failed to apply schema operation",
                        query=query[:100],
                        error=str(individual_e),
                    )


neo4j_manager = Neo4jManagerSingleton()
