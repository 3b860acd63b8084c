import shutil
from unittest.mock import AsyncMock, patch

import pytest
from sqlmodel import select
from tenacity import wait_none

from vnpay_service.models import OrderItem
from vnpay_service.services import assets
from vnpay_service.services.assets import move_order_assets, move_temp_files, run_asset_move
from vnpay_service.services.store import PaymentStore


def _write(path, content=b"png"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


class TestMoveTempFiles:

    def test_moves_files_and_reports_paths(self, tmp_path):
        _write(tmp_path / "temp" / "anon-1" / "front.png")
        _write(tmp_path / "temp" / "anon-1" / "mockup.png")

        moved = move_temp_files(tmp_path, "anon-1")

        assert moved == [
            ("temp/anon-1/front.png", "order/anon-1/front.png"),
            ("temp/anon-1/mockup.png", "order/anon-1/mockup.png"),
        ]
        assert (tmp_path / "order" / "anon-1" / "front.png").read_bytes() == b"png"
        assert not (tmp_path / "temp" / "anon-1" / "front.png").exists()

    def test_no_temp_folder(self, tmp_path):
        assert move_temp_files(tmp_path, "anon-1") == []

    def test_second_run_finds_nothing(self, tmp_path):
        _write(tmp_path / "temp" / "anon-1" / "front.png")
        move_temp_files(tmp_path, "anon-1")
        assert move_temp_files(tmp_path, "anon-1") == []

    def test_transient_errors_are_retried(self, tmp_path):
        with patch.object(assets, "move_temp_files", side_effect=[OSError("busy"), [("a", "b")]]) as mover:
            moved = assets._move_with_retry.retry_with(wait=wait_none())(tmp_path, "anon-1")
        assert moved == [("a", "b")]
        assert mover.call_count == 2


@pytest.mark.asyncio
class TestMoveOrderAssets:

    async def _seed(self, factory, seed_order):
        await seed_order(
            factory,
            anonymous_id="anon-1",
            item_paths=[("temp/anon-1/front.png", "temp/anon-1/mockup.png")],
        )
        async with factory() as session:
            await PaymentStore(session).create_payment_record("abc1231", "abc123", amount=10.0, amount_minor=23000000)
            await session.commit()

    async def test_moves_files_and_repoints_items(self, tmp_path, session_factory, seed_order):
        await self._seed(session_factory, seed_order)
        _write(tmp_path / "storage" / "temp" / "anon-1" / "front.png")
        _write(tmp_path / "storage" / "temp" / "anon-1" / "mockup.png")

        count = await move_order_assets(session_factory, str(tmp_path / "storage"), "abc1231", "abc123", "anon-1")

        assert count == 2
        assert (tmp_path / "storage" / "order" / "anon-1" / "front.png").exists()
        async with session_factory() as session:
            item = (await session.exec(select(OrderItem).where(OrderItem.order_id == "abc123"))).one()
            record = await PaymentStore(session).find_payment_record_by_ref("abc1231")
        assert item.custom_design_url == "order/anon-1/front.png"
        assert item.mockup_design_url == "order/anon-1/mockup.png"
        assert record.assets_moved_at is not None

    async def test_failure_is_logged_not_raised(self, tmp_path, session_factory, seed_order, caplog):
        await self._seed(session_factory, seed_order)
        with patch.object(assets, "move_order_assets", AsyncMock(side_effect=OSError("disk gone"))):
            await run_asset_move(session_factory, str(tmp_path), "abc1231", "abc123", "anon-1")

        assert "Moving assets for order abc123" in caplog.text
        async with session_factory() as session:
            record = await PaymentStore(session).find_payment_record_by_ref("abc1231")
        assert record.assets_moved_at is None

    async def test_files_moved_before_a_retry_are_repointed(self, tmp_path, session_factory, seed_order):
        await self._seed(session_factory, seed_order)
        root = tmp_path / "storage"
        _write(root / "temp" / "anon-1" / "front.png")
        _write(root / "temp" / "anon-1" / "mockup.png")

        real_move = shutil.move
        failures = []

        def flaky_move(src, dst):
            if src.endswith("mockup.png") and not failures:
                failures.append(src)
                raise OSError("device busy")
            return real_move(src, dst)

        fast_retry = assets._move_with_retry.retry_with(wait=wait_none())
        with patch.object(assets, "_move_with_retry", fast_retry), patch.object(assets.shutil, "move", flaky_move):
            count = await move_order_assets(session_factory, str(root), "abc1231", "abc123", "anon-1")

        assert failures
        assert count == 2
        async with session_factory() as session:
            item = (await session.exec(select(OrderItem).where(OrderItem.order_id == "abc123"))).one()
        assert item.custom_design_url == "order/anon-1/front.png"
        assert item.mockup_design_url == "order/anon-1/mockup.png"

    async def test_rerun_after_files_already_moved(self, tmp_path, session_factory, seed_order):
        await self._seed(session_factory, seed_order)
        root = tmp_path / "storage"
        _write(root / "temp" / "anon-1" / "front.png")
        _write(root / "temp" / "anon-1" / "mockup.png")
        move_temp_files(root, "anon-1")

        await move_order_assets(session_factory, str(root), "abc1231", "abc123", "anon-1")

        async with session_factory() as session:
            item = (await session.exec(select(OrderItem).where(OrderItem.order_id == "abc123"))).one()
            record = await PaymentStore(session).find_payment_record_by_ref("abc1231")
        assert item.custom_design_url == "order/anon-1/front.png"
        assert item.mockup_design_url == "order/anon-1/mockup.png"
        assert record.assets_moved_at is not None
