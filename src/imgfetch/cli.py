"""imgfetch CLI - pull verified library images through a local cache."""
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError

from imgfetch.cache import CacheHandle
from imgfetch.config import Settings, default_architecture
from imgfetch.core.context import FetchContext
from imgfetch.core.errors import (
    CancelledError,
    ConfigError,
    HashMismatchError,
    InvalidRefError,
    NotFoundError,
    VerificationFailedError,
)
from imgfetch.library import LibraryClient, normalize_library_ref, pull_to_cache, pull_to_path
from imgfetch.verify import Ed25519Verifier

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(name)s: %(message)s",
)
logger = logging.getLogger("imgfetch")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_NOT_FOUND = 3
EXIT_HASH_MISMATCH = 4
EXIT_VERIFY_FAILED = 5
EXIT_UNSIGNED = 6
EXIT_CONFIG = 7
EXIT_CANCELLED = 130


class ClickProgress:
    """Download progress sink backed by click.progressbar."""

    def __init__(self, label: str):
        self.label = label
        self._bar = None
        self._done = 0

    def __call__(self, done: int, total: Optional[int]) -> None:
        if total is None:
            return
        if self._bar is None:
            self._bar = click.progressbar(length=total, label=self.label, file=sys.stderr)
            self._bar.__enter__()
        self._bar.update(done - self._done)
        self._done = done

    def close(self) -> None:
        if self._bar is not None:
            self._bar.__exit__(None, None, None)
            self._bar = None


def _load_settings(config: Optional[Path], **overrides) -> Settings:
    """Load settings and apply CLI overrides that were actually given."""
    settings = Settings.load(config_path=config)
    updates = {k: v for k, v in overrides.items() if v is not None}
    if not updates:
        return settings
    try:
        return Settings(**{**settings.model_dump(), **updates})
    except ValidationError as e:
        raise ConfigError(f"Invalid option: {e}") from e


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool):
    """imgfetch - pull verified container images from a library."""
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)


@main.command()
@click.argument("reference")
@click.argument("dest", required=False, type=click.Path(dir_okay=False, path_type=Path))
@click.option("--arch", default=None, help="Image architecture (default: host architecture)")
@click.option("--library", "library_url", default=None, help="Library API URL")
@click.option("--keyserver", "keyserver_url", default=None, help="Key server URL")
@click.option("--disable-cache", is_flag=True, help="Do not use the image cache")
@click.option(
    "--require-signed",
    is_flag=True,
    help="Fail (exit 6) if the image has no trusted signature",
)
@click.option(
    "--strict-hash",
    is_flag=True,
    help="Hash-check images even when the cache is disabled",
)
@click.option("--timeout", type=float, default=None, help="Overall deadline in seconds")
@click.option(
    "--config",
    type=click.Path(exists=False, dir_okay=False, path_type=Path),
    default=None,
    help="JSON configuration file",
)
def pull(
    reference: str,
    dest: Optional[Path],
    arch: Optional[str],
    library_url: Optional[str],
    keyserver_url: Optional[str],
    disable_cache: bool,
    require_signed: bool,
    strict_hash: bool,
    timeout: Optional[float],
    config: Optional[Path],
):
    """Pull REFERENCE into the cache, or to DEST with signature verification.

    Examples:
        imgfetch pull alpine:latest
        imgfetch pull library://entity/collection/alpine:3.18 alpine.img --arch arm64

    Exit codes:
        0: Success
        1: Generic runtime failure
        2: Invalid CLI usage
        3: Image not found or invalid reference
        4: Downloaded image hash mismatch
        5: Signature verification failed
        6: Image unsigned and --require-signed given
        7: Configuration error
        130: Cancelled
    """
    try:
        settings = _load_settings(
            config,
            library_url=library_url,
            keyserver_url=keyserver_url,
            disable_cache=True if disable_cache else None,
        )
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(EXIT_CONFIG)

    arch = arch or default_architecture()
    ctx = FetchContext(timeout=timeout)
    img_cache = CacheHandle(settings.cache_dir, disabled=settings.disable_cache)
    client = LibraryClient(settings.library_url, settings.auth_token, timeout=settings.timeout)
    progress = ClickProgress("Downloading")

    try:
        ref = normalize_library_ref(reference)
        if dest is None:
            path = pull_to_cache(
                ctx, img_cache, client, ref, arch,
                tmp_dir=settings.tmp_dir, progress=progress,
            )
            progress.close()
            click.echo(f"[OK] Image pulled: {ref}")
            click.echo(f"  Path: {path}")
            sys.exit(EXIT_OK)

        verifier = Ed25519Verifier(
            keyring_dir=settings.keyring_dir,
            keyserver_url=settings.keyserver_url,
            use_keyserver=settings.use_keyserver,
            timeout=settings.timeout,
        )
        result = pull_to_path(
            ctx, img_cache, client, ref, arch, dest, verifier,
            progress=progress, verify_direct_hash=strict_hash,
        )
        progress.close()

        click.echo(f"[OK] Image pulled: {ref}")
        click.echo(f"  Path: {result.path}")
        click.echo(f"  Trust: {result.trust.value}")
        if result.unsigned:
            if require_signed:
                logger.error(f"{ref}: image is not signed by a trusted key")
                sys.exit(EXIT_UNSIGNED)
            logger.warning(f"{ref}: image is not signed by a trusted key")
        sys.exit(EXIT_OK)

    except InvalidRefError as e:
        progress.close()
        logger.error(f"Invalid reference: {str(e)}")
        sys.exit(EXIT_NOT_FOUND)

    except NotFoundError as e:
        progress.close()
        logger.error(f"Image not found: {str(e)}")
        sys.exit(EXIT_NOT_FOUND)

    except HashMismatchError as e:
        progress.close()
        logger.error(f"Integrity check failed: {str(e)}")
        sys.exit(EXIT_HASH_MISMATCH)

    except VerificationFailedError as e:
        progress.close()
        logger.error(f"Verification failed: {str(e)}")
        if e.path:
            logger.error(f"Image left at {e.path} for inspection")
        sys.exit(EXIT_VERIFY_FAILED)

    except (CancelledError, KeyboardInterrupt) as e:
        progress.close()
        logger.error(f"Pull cancelled: {str(e) or 'interrupted'}")
        sys.exit(EXIT_CANCELLED)

    except Exception as e:
        progress.close()
        logger.error(f"Pull failed: {str(e)}")
        sys.exit(EXIT_FAILURE)


@main.group()
def cache():
    """Inspect and clean the image cache."""
    pass


@cache.command("list")
@click.option("--config", type=click.Path(dir_okay=False, path_type=Path), default=None)
def cache_list(config: Optional[Path]):
    """List finalized cache entries."""
    try:
        settings = Settings.load(config_path=config)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(EXIT_CONFIG)

    handle = CacheHandle(settings.cache_dir)
    entries = handle.list_entries()
    for entry in entries:
        click.echo(f"{entry.name}  {entry.stat().st_size} bytes")
    click.echo(f"{len(entries)} cached image(s) in {handle.root}")


@cache.command("clean")
@click.option("--config", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def cache_clean(config: Optional[Path], yes: bool):
    """Remove every cached image."""
    try:
        settings = Settings.load(config_path=config)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(EXIT_CONFIG)

    handle = CacheHandle(settings.cache_dir)
    if not yes:
        click.confirm(f"Remove all cached images in {handle.root}?", abort=True)
    removed = handle.clean()
    click.echo(f"[OK] Removed {removed} file(s) from {handle.root}")


if __name__ == "__main__":
    main()
