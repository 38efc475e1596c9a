from __future__ import annotations

"""CLI utility to drop and recreate the PostgreSQL index tables."""

import argparse

from docrag.app.settings import settings
from docrag.index.postgres import PostgresConfig, PostgresIndexStore


def main() -> None:
    """Reset the configured index database using app settings."""
    parser = argparse.ArgumentParser(description="Drop and recreate the document index tables.")
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help="SQLAlchemy URL of the index database.",
    )
    parser.add_argument(
        "--dimension",
        type=int,
        default=settings.embedding_dimension,
        help="Embedding dimension for the recreated chunks table.",
    )
    args = parser.parse_args()

    config = PostgresConfig(
        url=args.database_url, dimension=args.dimension, ts_config=settings.ts_config
    )
    print("Dropping index tables")
    PostgresIndexStore.reset(config)
    print(f"Recreated index tables with dimension {args.dimension}")


if __name__ == "__main__":
    main()
