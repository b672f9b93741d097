"""
Carving Dispatcher.

Runs every available carving engine against the frozen disk image. Each
run of an engine writes into a fresh <outdir>/<engine>_out/run_<timestamp>
directory and shares nothing with the other engines, so one engine being
missing or failing never affects the rest, and counts never include files
left by earlier runs. The summary counts recovered files per engine and ranks
the largest ones as a rough proxy for recovery quality.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from .file_carver import FileCarver
from ..config import RescueConfig
from ..errors import EngineFailure, EngineUnavailable
from ..utils import CommandResult, CommandRunner, run_command

logger = logging.getLogger(__name__)

JPEG_EXTENSIONS = (".jpg", ".jpeg")


@dataclass
class CarveResult:
    """Carve Result Set of one engine"""
    engine: str
    output_dir: Path  # this run's directory, the engine writes nothing else
    status: str = "ok"  # ok | unavailable | failed
    files: List[Path] = field(default_factory=list)
    error: str = ""

    @property
    def count(self) -> int:
        return len(self.files) if self.status == "ok" else 0


@dataclass
class CarveSummary:
    results: Dict[str, CarveResult] = field(default_factory=dict)

    @property
    def counts(self) -> Dict[str, int]:
        return {name: result.count for name, result in self.results.items()}

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def largest(self, n: int = 20) -> List[Tuple[Path, int, str]]:
        """(path, size, engine) of the n largest files from successful engines"""
        ranked = []
        for result in self.results.values():
            if result.status != "ok":
                continue
            for path in result.files:
                try:
                    ranked.append((path, path.stat().st_size, result.engine))
                except OSError:
                    continue
        ranked.sort(key=lambda item: item[1], reverse=True)
        return ranked[:n]


class CarvingEngine:
    """
    One carving engine. Subclasses provide the command line; the base class
    handles availability, logging and collecting the recovered files.
    """

    name = "engine"
    tool: Optional[str] = None
    extensions: Tuple[str, ...] = JPEG_EXTENSIONS

    def is_available(self, capabilities: FrozenSet[str]) -> bool:
        return self.tool is None or self.tool in capabilities

    def unavailable_reason(self) -> str:
        return f"{self.tool} not installed"

    def command(self, image_path: Path, output_dir: Path) -> List[str]:
        raise NotImplementedError

    def run(self, image_path: Path, output_dir: Path, runner: CommandRunner) -> None:
        """
        Run the engine to completion, writing into output_dir (empty, created
        for this run).

        Raises:
            EngineFailure: If the tool exits non-zero
        """
        cmd = self.command(image_path, output_dir)
        logger.info(f"[{self.name}] {' '.join(cmd)}")
        result = runner(cmd)
        self._write_log(output_dir, result)
        if not result.success:
            raise EngineFailure(f"{self.name} exited with status {result.returncode}")

    def collect(self, output_dir: Path) -> List[Path]:
        return sorted(p for p in output_dir.rglob("*")
                      if p.is_file() and p.suffix.lower() in self.extensions)

    def _write_log(self, output_dir: Path, result: CommandResult) -> None:
        # one log per engine, next to its run directories
        log_file = output_dir.parent / f"{self.name}.log"
        with open(log_file, 'a') as f:
            f.write(f"$ {' '.join(result.command)}\n")
            f.write(result.output + "\n")
            f.write(f"exit status {result.returncode}\n")


class PhotoRecEngine(CarvingEngine):
    """Signature-based whole-file carver, driven non-interactively"""

    name = "photorec"
    tool = "photorec"

    def __init__(self, file_types: Iterable[str] = ("jpg",)):
        self.file_types = list(file_types)

    def command(self, image_path, output_dir):
        options = ["fileopt", "everything", "disable"]
        for ft in self.file_types:
            options += [ft, "enable"]
        options.append("search")
        return ["photorec", "/log", "/d", str(output_dir / "recup_dir"),
                "/cmd", str(image_path), ",".join(options)]


class RecoverJpegEngine(CarvingEngine):
    """JPEG-specific carver"""

    name = "recoverjpeg"
    tool = "recoverjpeg"

    def command(self, image_path, output_dir):
        return ["recoverjpeg", "-o", str(output_dir), str(image_path)]


class ForemostEngine(CarvingEngine):
    """JPEG carve with foremost"""

    name = "foremost"
    tool = "foremost"

    def command(self, image_path, output_dir):
        return ["foremost", "-t", "jpg", "-i", str(image_path), "-o", str(output_dir)]


class ExifThumbnailEngine(CarvingEngine):
    """
    Embedded preview extraction with exiftool.

    Scans a separately configured source tree (e.g. a still-readable DCIM
    folder), not the image, and saves each file's thumbnail as
    <name>_thumb.jpg.
    """

    name = "exif_thumbs"
    tool = "exiftool"

    def __init__(self, source: Optional[Path] = None):
        self.source = Path(source) if source else None
        self._tool_missing = False

    def is_available(self, capabilities):
        self._tool_missing = not super().is_available(capabilities)
        return not self._tool_missing and self.source is not None and self.source.is_dir()

    def unavailable_reason(self) -> str:
        if self._tool_missing:
            return super().unavailable_reason()
        if self.source is None:
            return "no thumbnail_source configured"
        return f"thumbnail source {self.source} is not a readable directory"

    def command(self, image_path, output_dir):
        return ["exiftool", "-r", "-if", "$ThumbnailImage", "-b", "-ThumbnailImage",
                "-w", f"{output_dir}/%f_thumb.jpg", "-ext", "JPG", str(self.source)]

    def run(self, image_path, output_dir, runner):
        # exiftool exits 1 when some files had no thumbnail; only 2+ is an error
        cmd = self.command(image_path, output_dir)
        logger.info(f"[{self.name}] {' '.join(cmd)}")
        result = runner(cmd)
        self._write_log(output_dir, result)
        if result.returncode not in (0, 1):
            raise EngineFailure(f"{self.name} exited with status {result.returncode}")


class BuiltinCarverEngine(CarvingEngine):
    """Header/footer carving in Python, needs no external tool"""

    name = "pycarve"
    tool = None

    def __init__(self, file_types: Iterable[str] = ("jpg",)):
        self.file_types = list(file_types)
        kinds = (ft.lower().strip('.') for ft in self.file_types)
        self.extensions = tuple(f".{FileCarver.ALIASES.get(k, k)}" for k in kinds)

    def run(self, image_path, output_dir, runner):
        carved = FileCarver(str(image_path), str(output_dir)).carve(self.file_types)
        truncated = sum(1 for item in carved if not item.complete)
        logger.info(f"[{self.name}] carved {len(carved)} files ({truncated} without footer)")


def default_engines(config: RescueConfig) -> List[CarvingEngine]:
    """Engines named in config.engines, in that order"""
    factories = {
        "exif_thumbs": lambda: ExifThumbnailEngine(config.thumbnail_source),
        "photorec": lambda: PhotoRecEngine(config.carve_types),
        "recoverjpeg": RecoverJpegEngine,
        "foremost": ForemostEngine,
        "pycarve": lambda: BuiltinCarverEngine(config.carve_types),
    }
    engines = []
    for name in config.engines:
        if name not in factories:
            logger.warning(f"Unknown carving engine {name!r} ignored")
            continue
        engines.append(factories[name]())
    return engines


def _fresh_dir(parent: Path, stamp: str) -> Path:
    """parent/stamp, or parent/stamp_N when an earlier run already used it"""
    candidate = parent / stamp
    n = 1
    while candidate.exists():
        n += 1
        candidate = parent / f"{stamp}_{n}"
    return candidate


class CarvingDispatcher:
    """Run each available engine into its own directory and aggregate the results"""

    def __init__(self, engines: List[CarvingEngine], capabilities: FrozenSet[str],
                 runner: CommandRunner = run_command, parallel: bool = False):
        self.engines = engines
        self.capabilities = capabilities
        self.runner = runner
        self.parallel = parallel

    def dispatch(self, image_path: Path, output_dir: Path) -> CarveSummary:
        """
        Run every engine. Never raises for a missing or failing engine.

        Args:
            image_path: Frozen disk image (read only)
            output_dir: Session output directory; engines write to <name>_out/run_<stamp>
        """
        image_path, output_dir = Path(image_path), Path(output_dir)
        summary = CarveSummary()
        stamp = datetime.now().strftime("run_%Y%m%d_%H%M%S")

        if self.parallel and len(self.engines) > 1:
            with ThreadPoolExecutor(max_workers=len(self.engines)) as executor:
                futures = [executor.submit(self._run_engine, engine, image_path,
                                           output_dir, stamp)
                           for engine in self.engines]
                results = [future.result() for future in futures]
        else:
            results = [self._run_engine(engine, image_path, output_dir, stamp)
                       for engine in self.engines]

        for result in results:
            summary.results[result.engine] = result

        logger.info("Carving summary: " + ", ".join(
            f"{name}={count}" for name, count in summary.counts.items()))
        return summary

    def _run_engine(self, engine: CarvingEngine, image_path: Path,
                    output_dir: Path, stamp: str) -> CarveResult:
        run_dir = _fresh_dir(output_dir / f"{engine.name}_out", stamp)
        result = CarveResult(engine.name, run_dir)

        try:
            if not engine.is_available(self.capabilities):
                raise EngineUnavailable(f"{engine.name} skipped: {engine.unavailable_reason()}")
            run_dir.mkdir(parents=True)
            engine.run(image_path, run_dir, self.runner)
        except EngineUnavailable as e:
            logger.info(str(e))
            result.status, result.error = "unavailable", str(e)
            return result
        except (EngineFailure, OSError) as e:
            logger.warning(f"{engine.name} failed: {e}")
            result.status, result.error = "failed", str(e)
            return result

        result.files = engine.collect(run_dir)
        logger.info(f"[{engine.name}] {len(result.files)} files in {run_dir}")
        return result
