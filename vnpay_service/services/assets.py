import asyncio
import logging
import shutil
from pathlib import Path
from typing import List, Tuple

from sqlalchemy.orm import sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .store import PaymentStore

logger = logging.getLogger(__name__)

TEMP_DIR = "temp"
ORDER_DIR = "order"


def move_temp_files(root: Path, anonymous_id: str) -> List[Tuple[str, str]]:
    """
    Move temp/<anonymous_id>/* to order/<anonymous_id>/.

    Returns (old, new) storage paths relative to `root`. Safe to run again:
    files already moved are simply no longer in temp/.
    """
    source_dir = root / TEMP_DIR / anonymous_id
    if not source_dir.is_dir():
        return []

    dest_dir = root / ORDER_DIR / anonymous_id
    dest_dir.mkdir(parents=True, exist_ok=True)

    moved = []
    for source in sorted(source_dir.iterdir()):
        if not source.is_file():
            continue
        shutil.move(str(source), str(dest_dir / source.name))
        moved.append((
            f"{TEMP_DIR}/{anonymous_id}/{source.name}",
            f"{ORDER_DIR}/{anonymous_id}/{source.name}",
        ))
    return moved


def order_item_paths(root: Path, anonymous_id: str) -> List[Tuple[str, str]]:
    """
    (temp, order) path pairs for every file now in order/<anonymous_id>/.

    Built from the destination folder so files moved by an earlier attempt
    are still repointed.
    """
    dest_dir = root / ORDER_DIR / anonymous_id
    if not dest_dir.is_dir():
        return []
    return [
        (f"{TEMP_DIR}/{anonymous_id}/{path.name}", f"{ORDER_DIR}/{anonymous_id}/{path.name}")
        for path in sorted(dest_dir.iterdir())
        if path.is_file()
    ]


@retry(
    retry=retry_if_exception_type(OSError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)
def _move_with_retry(root: Path, anonymous_id: str) -> List[Tuple[str, str]]:
    return move_temp_files(root, anonymous_id)


async def move_order_assets(
    session_factory: sessionmaker,
    asset_root: str,
    txn_ref: str,
    order_id: str,
    anonymous_id: str,
) -> int:
    root = Path(asset_root)
    await asyncio.to_thread(_move_with_retry, root, anonymous_id)
    moved = await asyncio.to_thread(order_item_paths, root, anonymous_id)

    async with session_factory() as session:
        store = PaymentStore(session)
        for old_path, new_path in moved:
            await store.replace_item_path(order_id, old_path, new_path)
        await store.mark_assets_moved(txn_ref)
        await session.commit()
    return len(moved)


async def run_asset_move(
    session_factory: sessionmaker,
    asset_root: str,
    txn_ref: str,
    order_id: str,
    anonymous_id: str,
) -> None:
    """Background task entry point. Failures are logged; payment state is never touched."""
    try:
        count = await move_order_assets(session_factory, asset_root, txn_ref, order_id, anonymous_id)
    except Exception:
        logger.exception(f"Moving assets for order {order_id} ({txn_ref}) failed; retry with the reconcile sweep")
        return
    logger.info(f"{count} files in order folder for order {order_id}")
