from __future__ import annotations

import unittest
from dataclasses import replace
from pathlib import Path
from tempfile import TemporaryDirectory

import anyio

from xiaoguang_lite.domain.errors import DuplicateMasterError, ImmutableCanonicalIdError
from xiaoguang_lite.domain.identity import MASTER_CANONICAL_ID, Identity
from xiaoguang_lite.infra.sqlite.db import SQLiteEngine
from xiaoguang_lite.infra.sqlite.identity_repository import IdentityRepository
from xiaoguang_lite.infra.sqlite.init_schema import init_schema
from xiaoguang_lite.service.identity_registry import IdentityRegistry


def _alice() -> Identity:
    return Identity(
        canonical_id="person_alice",
        display_name="爱丽丝",
        character_id="char_alice",
        person_identifier="voice_17",
        aliases=["Alice", "小爱"],
    )


class IdentityTests(unittest.TestCase):
    def test_blank_fields_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            Identity(canonical_id=" ", display_name="x")
        with self.assertRaises(ValueError):
            Identity(canonical_id="x", display_name="")

    def test_aliases_are_cleaned(self) -> None:
        identity = Identity(canonical_id="x", display_name="X", aliases=[" a ", "", "b"])
        self.assertEqual(frozenset({"a", "b"}), identity.aliases)

    def test_frozenset_aliases_are_cleaned_too(self) -> None:
        identity = Identity(canonical_id="x", display_name="X", aliases=frozenset({" A ", " "}))
        self.assertEqual(frozenset({"A"}), identity.aliases)

    def test_create_master_uses_fixed_canonical_id(self) -> None:
        master = Identity.create_master(character_id="char_1_master")
        self.assertEqual(MASTER_CANONICAL_ID, master.canonical_id)
        self.assertTrue(master.is_master)
        self.assertIn("主人", master.aliases)


class IdentityRegistryTests(unittest.IsolatedAsyncioTestCase):
    async def test_resolve_by_every_identifier(self) -> None:
        registry = IdentityRegistry()
        await registry.register(_alice())
        for key in ("person_alice", "char_alice", "voice_17", "爱丽丝", "Alice", "小爱"):
            resolved = await registry.resolve(key)
            self.assertIsNotNone(resolved, key)
            self.assertEqual("person_alice", resolved.canonical_id)
        self.assertIsNone(await registry.resolve("bob"))
        self.assertIsNone(await registry.resolve("  "))
        self.assertEqual("char_alice", await registry.get_character_id("Alice"))
        self.assertEqual("爱丽丝", await registry.get_display_name("voice_17"))

    async def test_update_drops_old_aliases_from_index(self) -> None:
        registry = IdentityRegistry()
        await registry.register(_alice())
        updated = await registry.update(
            "person_alice", lambda current: current.with_aliases({"Ally"})
        )
        self.assertIsNotNone(updated)
        self.assertIsNone(await registry.resolve("小爱"))
        self.assertEqual("person_alice", (await registry.resolve("Ally")).canonical_id)

    async def test_add_and_remove_alias(self) -> None:
        registry = IdentityRegistry()
        await registry.register(_alice())
        await registry.add_alias("Alice", "爱爱")
        self.assertIsNotNone(await registry.resolve("爱爱"))
        await registry.remove_alias("爱爱", "爱爱")
        self.assertIsNone(await registry.resolve("爱爱"))
        with self.assertRaises(ValueError):
            await registry.add_alias("Alice", " ")
        self.assertIsNone(await registry.add_alias("nobody", "x"))

    async def test_canonical_id_is_immutable(self) -> None:
        registry = IdentityRegistry()
        await registry.register(_alice())
        with self.assertRaises(ImmutableCanonicalIdError):
            await registry.update(
                "person_alice", lambda current: replace(current, canonical_id="other")
            )
        self.assertIsNotNone(await registry.resolve("person_alice"))

    async def test_second_master_is_rejected(self) -> None:
        registry = IdentityRegistry()
        await registry.register(Identity.create_master(character_id="char_m"))
        impostor = Identity(canonical_id="master_002", display_name="假主人", is_master=True)
        with self.assertRaises(DuplicateMasterError):
            await registry.register(impostor)
        await registry.register(_alice())
        with self.assertRaises(DuplicateMasterError):
            await registry.update("person_alice", lambda c: replace(c, is_master=True))
        master = await registry.get_master()
        self.assertEqual(MASTER_CANONICAL_ID, master.canonical_id)
        self.assertTrue(await registry.has_master())

    async def test_reregistering_master_is_allowed(self) -> None:
        registry = IdentityRegistry()
        await registry.register(Identity.create_master(character_id="char_m"))
        again = Identity.create_master(display_name="阿光主人", character_id="char_m")
        await registry.register(again)
        self.assertEqual("阿光主人", (await registry.get_master()).display_name)
        self.assertEqual(1, len(await registry.list_all()))

    async def test_registry_is_restored_from_repository(self) -> None:
        with TemporaryDirectory() as tmp:
            engine = SQLiteEngine(Path(tmp) / "xg.db")
            init_schema(engine)
            registry = IdentityRegistry(IdentityRepository(engine))
            await registry.initialize()
            await registry.register(_alice())
            await registry.add_alias("person_alice", "爱酱")

            restored = IdentityRegistry(IdentityRepository(engine))
            self.assertFalse(restored.is_initialized)
            self.assertEqual(1, await restored.initialize())
            self.assertTrue(restored.is_initialized)
            identity = await restored.resolve("爱酱")
            self.assertIsNotNone(identity)
            self.assertEqual("voice_17", identity.person_identifier)


class IdentityRegistryConcurrencyTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = TemporaryDirectory()
        engine = SQLiteEngine(Path(self._tmp.name) / "xg.db")
        init_schema(engine)
        # persisting through a worker thread yields while the registry lock is held
        self.registry = IdentityRegistry(IdentityRepository(engine))
        await self.registry.initialize()
        await self.registry.register(_alice())
        await self.registry.register(
            Identity(canonical_id="person_bob", display_name="鲍勃", aliases=["Bob"])
        )

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_resolve_is_idempotent_without_writes(self) -> None:
        first = await self.registry.resolve("Alice")
        for key in ("Alice", "Alice", "voice_17", "person_alice"):
            self.assertEqual(first, await self.registry.resolve(key))
        self.assertIsNone(await self.registry.resolve("nobody"))
        self.assertIsNone(await self.registry.resolve("nobody"))
        self.assertEqual(2, len(await self.registry.list_all()))
        self.assertEqual(first, await self.registry.resolve("Alice"))

    async def test_readers_never_see_a_half_rebuilt_index(self) -> None:
        problems: list[str] = []
        done = anyio.Event()

        async def _writer() -> None:
            for generation in range(25):
                await self.registry.update(
                    "person_alice",
                    lambda current, g=generation: current.with_aliases({f"alias_{g}"}),
                )
            done.set()

        async def _reader() -> None:
            while not done.is_set():
                alice = await self.registry.resolve("char_alice")
                if alice is None or alice.canonical_id != "person_alice":
                    problems.append(f"char_alice -> {alice}")
                    return
                for alias in alice.aliases:
                    by_alias = await self.registry.resolve(alias)
                    if by_alias is not None and by_alias.canonical_id != "person_alice":
                        problems.append(f"{alias} -> {by_alias.canonical_id}")
                bob = await self.registry.resolve("Bob")
                if bob is None or bob.canonical_id != "person_bob":
                    problems.append(f"Bob -> {bob}")
                await anyio.sleep(0)

        async with anyio.create_task_group() as tg:
            tg.start_soon(_writer)
            for _ in range(4):
                tg.start_soon(_reader)

        self.assertEqual([], problems)
        final = await self.registry.resolve("alias_24")
        self.assertEqual("person_alice", final.canonical_id)
        self.assertIsNone(await self.registry.resolve("alias_0"))
        self.assertIsNone(await self.registry.resolve("小爱"))

    async def test_concurrent_alias_additions_are_all_kept(self) -> None:
        aliases = [f"昵称{i}" for i in range(10)]
        async with anyio.create_task_group() as tg:
            for alias in aliases:
                tg.start_soon(self.registry.add_alias, "voice_17", alias)
                tg.start_soon(self.registry.resolve, "Alice")

        alice = await self.registry.resolve("person_alice")
        self.assertTrue(set(aliases).issubset(alice.aliases))
        for alias in aliases:
            self.assertEqual("person_alice", (await self.registry.resolve(alias)).canonical_id)


if __name__ == "__main__":
    unittest.main()
