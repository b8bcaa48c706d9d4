from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, List, Optional, Union

from .errors import ConfigError, SchedulerStateError
from .task import (
    MethodTable,
    MethodWork,
    ScheduledMethodMetadata,
    TaskDescriptor,
    declaration_from_kwargs,
    declared_schedule,
    work_for,
)

logger = logging.getLogger("cadence.registry")

DescriptorFactory = Callable[[], Union[TaskDescriptor, Iterable[TaskDescriptor], None]]


class Registry:
    """Append-only list of descriptor factories, materialized once by ``freeze``."""

    def __init__(self) -> None:
        self._factories: List[DescriptorFactory] = []
        self._frozen = False

    def __len__(self) -> int:
        return len(self._factories)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def contribute(self, factory: DescriptorFactory) -> None:
        self._ensure_open()
        self._factories.append(factory)

    def add(self, descriptor: TaskDescriptor) -> None:
        descriptor.validate()
        self.contribute(lambda: descriptor)

    def register(self, target: Any, name: Optional[str] = None, **declaration: Any) -> List[TaskDescriptor]:
        """Turn a function, Runnable or instance with scheduled methods into descriptors.

        Keyword arguments (``cron=``, ``fixed_rate=``, ``fixed_delay=``,
        ``initial_delay=``, ``enabled=``, ``time_unit=``, ``zone=``) take
        precedence over a ``@scheduled`` declaration on the target.
        """
        self._ensure_open()
        if isinstance(target, TaskDescriptor):
            if declaration:
                raise ConfigError(f'Error: task "{target.name}" is already a descriptor; drop the schedule keywords.')
            descriptors = [target]
        elif declaration:
            meta = declaration_from_kwargs(**declaration)
            descriptors = [_single_descriptor(target, meta, name)]
        else:
            meta = declared_schedule(target)
            if meta is not None:
                descriptors = [_single_descriptor(target, meta, name)]
            else:
                descriptors = _method_descriptors(target)
        for descriptor in descriptors:
            descriptor.validate()
        for descriptor in descriptors:
            self.contribute(lambda descriptor=descriptor: descriptor)
        return descriptors

    def freeze(self) -> List[TaskDescriptor]:
        self._ensure_open()
        self._frozen = True
        descriptors: List[TaskDescriptor] = []
        for factory in self._factories:
            produced = factory()
            if produced is None:
                continue
            batch = [produced] if isinstance(produced, TaskDescriptor) else list(produced)
            for descriptor in batch:
                if not isinstance(descriptor, TaskDescriptor):
                    raise ConfigError(f"Error: descriptor factory returned {descriptor!r}, expected TaskDescriptor.")
                descriptor.validate()
                descriptors.append(descriptor)
        logger.debug("Registry frozen: %s factory(ies) produced %s descriptor(s)", len(self._factories), len(descriptors))
        self._factories.clear()
        return descriptors

    def _ensure_open(self) -> None:
        if self._frozen:
            raise SchedulerStateError("Registry is frozen; tasks can only be added before build().")


def _default_name(target: Any) -> str:
    qualname = getattr(target, "__qualname__", None)
    if qualname:
        return qualname
    return type(target).__qualname__


def _single_descriptor(target: Any, meta: ScheduledMethodMetadata, name: Optional[str]) -> TaskDescriptor:
    return TaskDescriptor(
        name=name or _default_name(target),
        schedule=meta.schedule,
        work=work_for(target),
        initial_delay=meta.initial_delay,
        enabled=meta.enabled,
        time_unit=meta.time_unit,
    )


def _method_descriptors(instance: Any) -> List[TaskDescriptor]:
    table = MethodTable.for_instance(instance)
    if not len(table):
        raise ConfigError(
            f"Error: {type(instance).__qualname__} declares no schedule: pass cron=, fixed_rate= or "
            "fixed_delay=, decorate it with @scheduled, or give it @scheduled methods."
        )
    return [
        TaskDescriptor(
            name=f"{table.type_name}.{meta.method_name}",
            schedule=meta.schedule,
            work=MethodWork(table, meta.method_name),
            initial_delay=meta.initial_delay,
            enabled=meta.enabled,
            time_unit=meta.time_unit,
        )
        for meta in table.methods
    ]
