"""Built-in tools: current time and read-only access to the workspace."""

from datetime import datetime, timedelta, timezone
from pathlib import Path


class BuiltinTools:
    """Local tools that are always available to the model."""

    def __init__(self, workspace=".", timezone_offset=0, timezone_name="UTC", max_bytes=200_000):
        """Initialize built-in tools.

        Parameters
        ----------
        workspace : str or Path, optional
            Root directory the file tools are confined to (default: cwd)
        timezone_offset : int, optional
            Minutes offset from UTC (default: 0)
        timezone_name : str, optional
            Timezone name for display (default: "UTC")
        max_bytes : int, optional
            Largest file ``read_file`` returns in full
        """
        self.workspace = Path(workspace).expanduser().resolve()
        self.timezone_name = timezone_name
        self.timezone = timezone(-timedelta(minutes=timezone_offset))
        self.max_bytes = max_bytes

    def _resolve(self, path: str) -> Path:
        target = (self.workspace / path).resolve()
        if not target.is_relative_to(self.workspace):
            raise ValueError(f"Path is outside the workspace: {path}")
        return target

    def current_time(self) -> str:
        """Return the current date and time."""
        dt = datetime.now(self.timezone)
        return dt.strftime(f"%Y-%m-%d %H:%M:%S {self.timezone_name}")

    def list_files(self, path: str = ".") -> str:
        """List the files and directories under a workspace path, one per line."""
        target = self._resolve(path)
        if not target.is_dir():
            raise ValueError(f"Not a directory: {path}")
        entries = sorted(target.iterdir(), key=lambda p: (not p.is_dir(), p.name))
        lines = [
            f"{entry.relative_to(self.workspace)}{'/' if entry.is_dir() else ''}"
            for entry in entries
        ]
        return "\n".join(lines) if lines else "(empty directory)"

    def read_file(self, path: str) -> str:
        """Read a UTF-8 text file from the workspace."""
        target = self._resolve(path)
        if not target.is_file():
            raise ValueError(f"Not a file: {path}")
        data = target.read_bytes()
        text = data[: self.max_bytes].decode("utf-8", errors="replace")
        if len(data) > self.max_bytes:
            text += f"\n\n[truncated: {len(data) - self.max_bytes} more bytes]"
        return text

    def hook_provide_tools(self):
        """Return tools this plugin provides for auto-registration."""
        return [self.current_time, self.list_files, self.read_file]
