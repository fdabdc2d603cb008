"""Pydantic models for the toolchain capability report."""

from pydantic import BaseModel, ConfigDict, Field

PYTHON_PACKAGES = ("matplotlib", "pandas", "seaborn")


def missing_packages() -> dict[str, bool]:
    """All tracked packages marked unavailable."""
    return {name: False for name in PYTHON_PACKAGES}


class ToolchainEntry(BaseModel):
    """Availability of one typesetting engine."""

    ok: bool
    version: str = ""
    error: str = ""


class PythonInfo(BaseModel):
    """Discovered interpreter and the packages it can import."""

    ok: bool = False
    command: str = ""
    executable: str = ""
    version: str = ""
    packages: dict[str, bool] = Field(default_factory=missing_packages)


class CapabilityReport(BaseModel):
    """Uncached snapshot of the environment's optional toolchains."""

    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    platform: str
    arch: str
    runtime_version: str = Field(alias="runtimeVersion")
    hostname: str
    data_dir: str = Field(alias="dataDir")
    latex: dict[str, ToolchainEntry]
    python: PythonInfo
