"""
Zip archives of wg-quick files: import every ``.conf`` member as a tunnel
configuration, export tunnels as ``<name>.conf`` members.
"""
import logging
import posixpath
import zipfile
from typing import Iterable, List, Optional

from . import wgquick
from .errors import NoTunnelsToExportError, ParseError, ZipArchiveError
from .manager import tunnel_sort_key
from .model import TunnelConfiguration

logger = logging.getLogger(__name__)

CONF_EXTENSION = ".conf"


def _conf_members(archive: zipfile.ZipFile):
    for info in archive.infolist():
        if info.is_dir():
            continue
        base, extension = posixpath.splitext(posixpath.basename(info.filename.replace("\\", "/")))
        if extension.lower() != CONF_EXTENSION:
            continue
        name = base.strip()
        if not name:
            continue
        yield name, archive.read(info)


def import_configurations(path: str) -> List[Optional[TunnelConfiguration]]:
    """
    Parse every ``.conf`` file in the archive, sorted by tunnel name. Slots for
    files that are not UTF-8 or do not parse are None, so callers can report
    how many of the files made it.
    """
    try:
        archive = zipfile.ZipFile(path, "r")
    except OSError as e:
        raise ZipArchiveError(ZipArchiveError.CANT_OPEN_INPUT, str(e)) from e
    except zipfile.BadZipFile as e:
        raise ZipArchiveError(ZipArchiveError.BAD_ARCHIVE, str(e)) from e

    with archive:
        try:
            files = list(_conf_members(archive))
        except (zipfile.BadZipFile, NotImplementedError, RuntimeError) as e:
            # corrupt members, unsupported compression or encryption
            raise ZipArchiveError(ZipArchiveError.BAD_ARCHIVE, str(e)) from e

    if not files:
        raise ZipArchiveError(ZipArchiveError.NO_TUNNELS_IN_ARCHIVE)

    files.sort(key=lambda item: tunnel_sort_key(item[0]))
    configs: List[Optional[TunnelConfiguration]] = []
    previous = None
    for name, contents in files:
        if (name, contents) == previous:
            continue
        previous = (name, contents)
        try:
            configs.append(wgquick.parse(contents.decode("utf-8"), name=name))
        except UnicodeDecodeError:
            logger.warning("Skipping '%s%s': not UTF-8 text", name, CONF_EXTENSION)
            configs.append(None)
        except ParseError as e:
            logger.warning("Skipping '%s%s': %s", name, CONF_EXTENSION, e)
            configs.append(None)
    return configs


def export_configurations(configs: Iterable[TunnelConfiguration], path: str) -> int:
    """Write one ``<name>.conf`` member per named configuration. Returns the number written."""
    configs = list(configs)
    if not configs:
        raise NoTunnelsToExportError()

    written = 0
    last_name = ""
    try:
        with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as archive:
            for config in configs:
                name = config.name or "untitled"
                if name == last_name:
                    continue
                archive.writestr(name + CONF_EXTENSION, wgquick.serialize(config))
                last_name = name
                written += 1
    except OSError as e:
        raise ZipArchiveError(ZipArchiveError.CANT_OPEN_OUTPUT, str(e)) from e
    return written
