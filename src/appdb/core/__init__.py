"""Core primitives: settings, logging, errors, connections and setup.

Modules
-------
settings       DatabaseSettings (pydantic-settings, ``APPDB_*``)
logging        structlog configuration and ``log_duration``
errors         AppDbError hierarchy
connection     ConnectionDescriptor, URI parsing, migration engines
connectivity   SqlAlchemyConnectivityChecker
pool           Pooled engine and the default DatabaseHandle
protocols      Collaborator protocols for the setup pipeline
setup          SetupOrchestrator, setup_db(), db_is_setup()

Tags:
    appdb, core, package-overview

Doc-Types:
    package-overview
"""
