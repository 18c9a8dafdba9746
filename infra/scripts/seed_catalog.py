from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from clinic_authz.domain.errors import ConflictError  # noqa: E402
from clinic_authz.domain.models import BootstrapRequest  # noqa: E402
from clinic_authz.infra.logs import configure_logging  # noqa: E402
from clinic_authz.infra.migrate import run_upgrade_head  # noqa: E402
from clinic_authz.services.bootstrap_service import BootstrapService  # noqa: E402
from clinic_authz.services.catalog_service import PermissionCatalogService  # noqa: E402

logger = logging.getLogger("clinic_authz.seed")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Migrate the schema and seed the permission catalog.")
    parser.add_argument("--skip-migrate", action="store_true", help="do not run alembic upgrade head first")
    parser.add_argument("--organization", help="bootstrap the first organization with this name")
    parser.add_argument("--superadmin", help="username of the bootstrap superadmin")
    args = parser.parse_args(argv)

    configure_logging()
    if not args.skip_migrate:
        run_upgrade_head(str(ROOT / "alembic.ini"))

    if args.organization and args.superadmin:
        try:
            result = BootstrapService().bootstrap(
                BootstrapRequest(organization_name=args.organization, username=args.superadmin)
            )
        except ConflictError as exc:
            logger.error("bootstrap refused: %s", exc)
            return 1
        logger.info("bootstrap complete: %s", result)
        return 0

    permissions = PermissionCatalogService().ensure_catalog()
    logger.info("catalog holds %d permissions", len(permissions))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
