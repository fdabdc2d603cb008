"""Desktop integration endpoints: toolchain diagnostics."""

import logging

from fastapi import APIRouter

from app.core.toolchain import collect_diagnostics

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/diagnostics")
async def diagnostics() -> dict:
    """Probe LaTeX engines and the Python toolchain.

    Recomputed on every request; a missing tool is reported as data,
    never as an error response.
    """
    report = await collect_diagnostics()
    missing = [name for name, entry in report.latex.items() if not entry.ok]
    logger.info(
        "Diagnostics: %d/%d LaTeX engines available, python=%s",
        len(report.latex) - len(missing),
        len(report.latex),
        report.python.command or "none",
    )
    return report.model_dump(by_alias=True)
