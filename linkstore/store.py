"""Store facade — wires every component of one store from its settings."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from linkstore.config import StoreLayout, StoreSettings
from linkstore.core.assembler import PackageAssembler
from linkstore.core.checkout import CheckoutEngine
from linkstore.core.executor import BuildExecutor, Sandbox
from linkstore.core.gc import GarbageCollector
from linkstore.core.mapping_index import MappingIndex, ResolutionStrategy
from linkstore.core.object_store import ObjectStore
from linkstore.core.relocation import SelfReferenceRewriter
from linkstore.core.tree_builder import TreeBuilder
from linkstore.errors import NotFoundError
from linkstore.models.names import host_platform

logger = logging.getLogger(__name__)


class Store:
    """One on-disk store and its components.

    Use ``Store.init`` to create the layout and ``Store.open`` to attach to
    an existing one. Several stores may coexist in one process.
    """

    def __init__(
        self,
        settings: StoreSettings,
        *,
        sandbox: Sandbox | None = None,
        rewriter: SelfReferenceRewriter | None = None,
        strategy: ResolutionStrategy | None = None,
    ) -> None:
        self.settings = settings
        self.layout: StoreLayout = settings.layout()

        self.objects = ObjectStore(self.layout.objects, verify_reads=settings.verify_reads)
        self.tree_builder = TreeBuilder(self.objects)
        self.assembler = PackageAssembler(self.objects)
        self.checkout = CheckoutEngine(
            self.objects,
            self.layout.packages,
            link_fallback=settings.link_fallback,
            verify_existing=settings.verify_existing_checkouts,
        )
        self.mappings = MappingIndex.on_disk(
            self.layout.mappings,
            self.objects,
            source_priority=settings.source_priority,
            strategy=strategy,
        )
        self.executor = BuildExecutor(
            self.objects,
            self.tree_builder,
            self.assembler,
            self.checkout,
            self.mappings,
            layout=self.layout,
            local_source=settings.local_source,
            sandbox=sandbox,
            rewriter=rewriter,
            timeout=settings.build_timeout_seconds,
        )
        self.gc = GarbageCollector(
            self.objects, self.checkout, self.mappings, pinned=settings.pinned_packages
        )

    @classmethod
    def init(cls, settings: StoreSettings | None = None, **kwargs) -> Store:
        """Create the directory layout (idempotent) and open the store."""
        settings = settings or StoreSettings()
        for directory in settings.layout().directories():
            directory.mkdir(parents=True, exist_ok=True)
        logger.info("initialized store at %s", settings.layout().root)
        return cls(settings, **kwargs)

    @classmethod
    def open(cls, settings: StoreSettings | None = None, **kwargs) -> Store:
        """Open an existing store; ``NotFoundError`` if its layout is missing."""
        settings = settings or StoreSettings()
        layout = settings.layout()
        for directory in (layout.objects, layout.packages, layout.mappings):
            if not directory.is_dir():
                raise NotFoundError(
                    f"no store at {layout.root}: {directory} is missing "
                    f"(run `linkstore init`)",
                    path=directory,
                )
        return cls(settings, **kwargs)

    def import_directory(
        self,
        path: Path,
        name: str,
        platform: str | None = None,
        references: Iterable[str] = (),
    ) -> str:
        """Store a directory as a package, realize it, return the package hash."""
        tree_hash = self.tree_builder.build_tree(Path(path))
        package_hash = self.assembler.assemble(
            name, platform or host_platform(), references, tree_hash
        )
        self.checkout.realize(package_hash)
        return package_hash
