# offline/tests.py

from datetime import datetime, timezone as dt_timezone
from io import StringIO
from unittest import mock

import requests
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from core.domain.dispatcher import DomainEventDispatcher
from core.exceptions import ReplayFailed, StorageUnavailable
from core.services.collections import LocalCollection
from core.services.storage import LocalStorage, MemoryStore

from .backends import LocalCollectionBackend, RestBackend, get_default_backend
from .connectivity import Connectivity, ConnectivityMonitor, HttpProbe
from .domain import (
    CreateRecord,
    DeleteRecord,
    QueueDrained,
    UpdateRecord,
    WentOffline,
    WentOnline,
    operation_from_payload,
)
from .queue import PENDING_KEY, OfflineQueue, QueueState
from .services import build_offline_queue

User = get_user_model()


class RecordingBackend:
    """
    Backend double: records every call, fails the ones `fail_when` selects.
    """

    def __init__(self, fail_when=None, on_call=None):
        self.calls = []
        self.fail_when = fail_when or (lambda call: False)
        self.on_call = on_call

    def _handle(self, call):
        self.calls.append(call)
        if self.on_call is not None:
            self.on_call(call)
        if self.fail_when(call):
            raise ReplayFailed(f"{call} rejected")

    def insert(self, table, values):
        self._handle(("insert", table, values.get("ref")))

    def update(self, table, record_id, values):
        self._handle(("update", table, record_id))

    def delete(self, table, record_id):
        self._handle(("delete", table, record_id))


class FlakyStore(MemoryStore):
    """
    Memory store whose writes fail while `fail_writes` is set.
    """

    fail_writes = False

    def set(self, key, value):
        if self.fail_writes:
            raise StorageUnavailable("disk full")
        super().set(key, value)

    def update(self, key, func):
        if self.fail_writes:
            raise StorageUnavailable("disk full")
        return super().update(key, func)


def sale(ref, **values):
    return CreateRecord(table="sales", values={"ref": ref, **values})


class OfflineTestMixin:
    def make_queue(self, *, online=True, backend=None, store=None):
        self.store = store if store is not None else MemoryStore()
        self.storage = LocalStorage(self.store, namespace="cornerstone_")
        self.dispatcher = DomainEventDispatcher()
        self.connectivity = Connectivity(self.dispatcher, initially_online=online)
        self.backend = backend or RecordingBackend()
        self.queue = OfflineQueue(self.storage, self.backend, self.connectivity)
        return self.queue

    def persisted_payloads(self):
        return self.storage.load_local(PENDING_KEY)


# ============================================================
# Operations
# ============================================================

class OperationPayloadTests(SimpleTestCase):
    def test_update_payload_round_trip(self):
        op = UpdateRecord(
            table="deliveries",
            record_id="d-12",
            values={"status": "delivered"},
            enqueued_at=datetime(2025, 7, 14, 9, 30, tzinfo=dt_timezone.utc),
        )
        payload = op.to_payload()

        self.assertEqual(payload["kind"], "update")
        self.assertEqual(payload["record_id"], "d-12")
        self.assertEqual(payload["enqueued_at"], "2025-07-14T09:30:00+00:00")
        self.assertEqual(operation_from_payload(payload), op)

    def test_delete_payload(self):
        op = DeleteRecord(table="quotes", record_id="q-1")
        self.assertEqual(operation_from_payload(op.to_payload()), op)

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            operation_from_payload({"kind": "upsert", "table": "sales"})

    def test_missing_fields(self):
        with self.assertRaises(ValueError):
            operation_from_payload({"kind": "delete", "table": "sales"})
        with self.assertRaises(ValueError):
            operation_from_payload({"kind": "create", "table": "sales", "values": "x"})
        with self.assertRaises(ValueError):
            operation_from_payload({"kind": "create", "values": {}})
        with self.assertRaises(ValueError):
            operation_from_payload(["create"])

    def test_payload_without_timestamp_gets_one(self):
        op = operation_from_payload({"kind": "create", "table": "sales", "values": {}})
        self.assertIsNotNone(op.enqueued_at)


# ============================================================
# Connectivity
# ============================================================

class ConnectivityTests(SimpleTestCase):
    def setUp(self):
        self.dispatcher = DomainEventDispatcher()
        self.events = []
        self.dispatcher.subscribe(WentOnline, self.events.append)
        self.dispatcher.subscribe(WentOffline, self.events.append)

    def test_events_only_on_transitions(self):
        connectivity = Connectivity(self.dispatcher, initially_online=True)

        self.assertFalse(connectivity.set_online(True))
        self.assertTrue(connectivity.went_offline())
        self.assertFalse(connectivity.went_offline())
        self.assertTrue(connectivity.went_online())

        self.assertEqual([type(e) for e in self.events], [WentOffline, WentOnline])
        self.assertTrue(connectivity.is_online)

    def test_monitor_check_once(self):
        connectivity = Connectivity(self.dispatcher, initially_online=True)
        answers = iter([False, False, True])
        monitor = ConnectivityMonitor(connectivity, lambda: next(answers), interval=0)

        self.assertFalse(monitor.check_once())
        self.assertFalse(monitor.check_once())
        self.assertTrue(monitor.check_once())
        self.assertEqual([type(e) for e in self.events], [WentOffline, WentOnline])

    def test_monitor_probe_error_means_offline(self):
        connectivity = Connectivity(self.dispatcher, initially_online=True)

        def probe():
            raise OSError("no route to host")

        monitor = ConnectivityMonitor(connectivity, probe)
        with self.assertLogs("offline.connectivity", level="ERROR"):
            self.assertFalse(monitor.check_once())
        self.assertFalse(connectivity.is_online)

    def test_http_probe(self):
        session = mock.Mock()
        probe = HttpProbe("https://backend.example/health", timeout=2, session=session)

        self.assertTrue(probe())
        session.head.assert_called_once_with(
            "https://backend.example/health", timeout=2, allow_redirects=False
        )

        session.head.side_effect = requests.ConnectionError("down")
        self.assertFalse(probe())


# ============================================================
# Queue
# ============================================================

class OfflineQueueTests(OfflineTestMixin, SimpleTestCase):
    def test_initial_state(self):
        self.assertEqual(self.make_queue(online=True).state, QueueState.ONLINE_IDLE)
        self.assertEqual(self.make_queue(online=False).state, QueueState.OFFLINE_BUFFERING)

    def test_enqueue_persists_immediately(self):
        queue = self.make_queue(online=False)
        op = sale("VT25070001")

        queue.enqueue(op)

        payloads = self.persisted_payloads()
        self.assertEqual(len(payloads), 1)
        self.assertEqual(operation_from_payload(payloads[0]), op)
        self.assertEqual(self.backend.calls, [])

    def test_enqueue_while_online_does_not_replay(self):
        queue = self.make_queue(online=True)
        queue.enqueue(sale("a"))
        self.assertEqual(self.backend.calls, [])
        self.assertEqual(len(queue), 1)

    def test_enqueue_accepts_payload_dict(self):
        queue = self.make_queue()
        op = queue.enqueue({"kind": "delete", "table": "sales", "record_id": "s1"})
        self.assertIsInstance(op, DeleteRecord)

    def test_enqueue_rejects_other_objects(self):
        queue = self.make_queue()
        with self.assertRaises(TypeError):
            queue.enqueue("create sales")

    def test_failed_operation_stays_queued(self):
        backend = RecordingBackend(fail_when=lambda call: call[2] == "b")
        queue = self.make_queue(backend=backend)
        queue.enqueue(sale("a"))
        queue.enqueue(sale("b"))
        queue.enqueue(sale("c"))

        with self.assertLogs("offline.queue", level="WARNING"):
            result = queue.drain()

        self.assertEqual(result.attempted, 3)
        self.assertEqual(result.succeeded, 2)
        self.assertEqual(result.failed, 1)
        self.assertEqual(result.remaining, 1)
        payloads = self.persisted_payloads()
        self.assertEqual([p["values"]["ref"] for p in payloads], ["b"])

        backend.calls.clear()
        with self.assertLogs("offline.queue", level="WARNING"):
            second = queue.drain()
        self.assertEqual(backend.calls, [("insert", "sales", "b")])
        self.assertEqual(second.attempted, 1)
        self.assertEqual(queue.state, QueueState.ONLINE_IDLE)

    def test_retries_go_before_operations_enqueued_during_drain(self):
        queue = None

        def on_call(call):
            if call[2] == "a":
                queue.enqueue(sale("d"))

        backend = RecordingBackend(fail_when=lambda call: call[2] in ("a", "c"), on_call=on_call)
        queue = self.make_queue(backend=backend)
        for ref in ("a", "b", "c"):
            queue.enqueue(sale(ref))

        with self.assertLogs("offline.queue", level="WARNING"):
            queue.drain()

        self.assertEqual([op.values["ref"] for op in queue.pending()], ["a", "c", "d"])
        self.assertEqual(
            [p["values"]["ref"] for p in self.persisted_payloads()],
            ["a", "c", "d"],
        )

    def test_unexpected_error_is_logged_and_kept(self):
        def explode(call):
            raise KeyError("bad")

        queue = self.make_queue(backend=RecordingBackend(on_call=explode))
        queue.enqueue(sale("a"))

        with self.assertLogs("offline.queue", level="ERROR"):
            result = queue.drain()

        self.assertEqual(result.failed, 1)
        self.assertEqual(len(queue), 1)

    def test_full_offline_online_cycle(self):
        queue = self.make_queue(online=True)
        self.assertEqual(queue.state, QueueState.ONLINE_IDLE)

        self.connectivity.went_offline()
        self.assertEqual(queue.state, QueueState.OFFLINE_BUFFERING)

        queue.enqueue(sale("a"))
        queue.enqueue(UpdateRecord(table="sales", record_id="s9", values={"status": "completed"}))
        self.assertEqual(self.backend.calls, [])

        self.connectivity.went_online()

        self.assertEqual(
            self.backend.calls,
            [("insert", "sales", "a"), ("update", "sales", "s9")],
        )
        self.assertEqual(queue.state, QueueState.ONLINE_IDLE)
        self.assertEqual(self.persisted_payloads(), [])
        self.assertEqual(queue.pending(), [])

    def test_online_with_empty_queue_goes_idle(self):
        queue = self.make_queue(online=False)
        drained = []
        self.dispatcher.subscribe(QueueDrained, drained.append)

        self.connectivity.went_online()

        self.assertEqual(queue.state, QueueState.ONLINE_IDLE)
        self.assertEqual(drained, [])

    def test_going_offline_mid_sync_keeps_the_rest(self):
        def drop_connection(call):
            if call[2] == "a":
                self.connectivity.went_offline()

        queue = self.make_queue(online=False, backend=RecordingBackend(on_call=drop_connection))
        for ref in ("a", "b", "c"):
            queue.enqueue(sale(ref))

        states = []
        self.dispatcher.subscribe(WentOffline, lambda e: states.append(queue.state))

        self.connectivity.went_online()

        self.assertEqual(states, [QueueState.OFFLINE_BUFFERING])
        self.assertEqual(self.backend.calls, [("insert", "sales", "a")])
        self.assertEqual(queue.state, QueueState.OFFLINE_BUFFERING)
        self.assertEqual([op.values["ref"] for op in queue.pending()], ["b", "c"])
        self.assertEqual(len(self.persisted_payloads()), 2)

    def test_state_is_syncing_during_drain(self):
        seen = []
        queue = self.make_queue(
            online=False,
            backend=RecordingBackend(on_call=lambda call: seen.append(queue.state)),
        )
        queue.enqueue(sale("a"))

        self.connectivity.went_online()

        self.assertEqual(seen, [QueueState.SYNCING])
        self.assertEqual(queue.state, QueueState.ONLINE_IDLE)

    def test_drain_while_offline_is_a_noop(self):
        queue = self.make_queue(online=False)
        queue.enqueue(sale("a"))

        result = queue.drain()

        self.assertEqual(result.attempted, 0)
        self.assertEqual(result.remaining, 1)
        self.assertEqual(self.backend.calls, [])

    def test_nested_drain_is_refused(self):
        nested = []
        queue = None

        def drain_again(call):
            nested.append(queue.drain())

        queue = self.make_queue(backend=RecordingBackend(on_call=drain_again))
        queue.enqueue(sale("a"))

        result = queue.drain()

        self.assertEqual(result.succeeded, 1)
        self.assertEqual(nested[0].attempted, 0)

    def test_drained_event(self):
        queue = self.make_queue()
        events = []
        self.dispatcher.subscribe(QueueDrained, events.append)
        queue.enqueue(sale("a"))

        queue.drain()

        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].succeeded, 1)
        self.assertEqual(events[0].remaining, 0)

    def test_queue_survives_reload(self):
        store = MemoryStore()
        first = self.make_queue(online=False, store=store)
        first.enqueue(sale("a"))
        first.enqueue(DeleteRecord(table="quotes", record_id="q-3"))

        second = self.make_queue(online=True, store=store)

        self.assertEqual(second.pending(), first.pending())

    def test_unreadable_entries_are_dropped_on_load(self):
        store = MemoryStore()
        storage = LocalStorage(store, namespace="cornerstone_")
        storage.save_local(
            PENDING_KEY,
            [
                {"kind": "teleport", "table": "sales"},
                sale("a").to_payload(),
            ],
        )

        with self.assertLogs("offline.queue", level="WARNING"):
            queue = self.make_queue(store=store)

        self.assertEqual([op.values["ref"] for op in queue.pending()], ["a"])

    def test_save_and_load_local(self):
        queue = self.make_queue()
        value = {"products": [{"id": "p1", "name": "Hourdis 16", "stock": 1200}]}
        queue.save_local("stock_snapshot", value)
        self.assertEqual(queue.load_local("stock_snapshot"), value)

    def test_failed_enqueue_leaves_nothing_behind(self):
        store = FlakyStore()
        queue = self.make_queue(online=False, store=store)
        store.fail_writes = True

        with self.assertRaises(StorageUnavailable):
            queue.enqueue(sale("a"))

        store.fail_writes = False
        self.assertEqual(len(queue), 0)
        self.connectivity.went_online()
        self.assertEqual(self.backend.calls, [])

    def test_failed_save_after_replay_ends_the_pass_and_keeps_entries(self):
        store = FlakyStore()

        def break_store(call):
            store.fail_writes = True

        queue = self.make_queue(store=store, backend=RecordingBackend(on_call=break_store))
        queue.enqueue(sale("a"))

        with self.assertRaises(StorageUnavailable):
            queue.drain()

        self.assertEqual(queue.state, QueueState.ONLINE_IDLE)
        # Rien n'est perdu : l'opération sera rejouée
        self.assertEqual([op.values["ref"] for op in queue.pending()], ["a"])

        store.fail_writes = False
        result = queue.drain()
        self.assertEqual(result.attempted, 1)
        self.assertEqual(len(queue), 0)


class SharedStoreQueueTests(OfflineTestMixin, SimpleTestCase):
    """
    Web process and management commands each build their own queue on the
    same store.
    """

    def test_drain_elsewhere_is_not_undone_by_a_stale_queue(self):
        store = MemoryStore()
        backend = RecordingBackend()
        web = self.make_queue(online=False, store=store, backend=backend)
        web.enqueue(sale("a"))

        worker = self.make_queue(online=True, store=store, backend=backend)
        worker.drain()
        self.assertEqual(web.pending(), [])

        web.enqueue(sale("b"))
        self.assertEqual(
            [p["values"]["ref"] for p in self.persisted_payloads()],
            ["b"],
        )

        worker.drain()
        self.assertEqual(backend.calls, [("insert", "sales", "a"), ("insert", "sales", "b")])

    def test_enqueue_elsewhere_during_drain_is_kept(self):
        store = MemoryStore()
        web = self.make_queue(online=False, store=store)

        def enqueue_from_web(call):
            if call[2] == "a":
                web.enqueue(sale("d"))

        backend = RecordingBackend(fail_when=lambda call: call[2] == "b", on_call=enqueue_from_web)
        worker = self.make_queue(online=True, store=store, backend=backend)
        for ref in ("a", "b", "c"):
            web.enqueue(sale(ref))

        with self.assertLogs("offline.queue", level="WARNING"):
            result = worker.drain()

        self.assertEqual(result.remaining, 2)
        self.assertEqual([op.values["ref"] for op in web.pending()], ["b", "d"])
        self.assertEqual([op.values["ref"] for op in worker.pending()], ["b", "d"])


# ============================================================
# Backends
# ============================================================

class LocalCollectionBackendTests(OfflineTestMixin, SimpleTestCase):
    def setUp(self):
        self.storage = LocalStorage(MemoryStore(), namespace="cornerstone_")
        self.backend = LocalCollectionBackend(self.storage)
        self.sales = LocalCollection(self.storage, "sales")

    def test_insert_update_delete(self):
        self.backend.insert("sales", {"id": "s1", "status": "pending", "total": 1000})
        self.backend.update("sales", "s1", {"status": "completed"})
        self.assertEqual(
            self.sales.get("s1"),
            {"id": "s1", "status": "completed", "total": 1000},
        )

        self.backend.delete("sales", "s1")
        self.assertEqual(self.sales.read_all(), [])

    def test_update_unknown_record_is_ignored(self):
        self.backend.update("sales", "missing", {"status": "completed"})
        self.assertEqual(self.sales.read_all(), [])

    def test_duplicate_insert_fails(self):
        self.backend.insert("sales", {"id": "s1"})
        with self.assertRaises(ReplayFailed):
            self.backend.insert("sales", {"id": "s1"})

    def test_reserved_table_fails(self):
        with self.assertRaises(ReplayFailed):
            self.backend.insert("pending_operations", {"id": "x"})

    def test_queue_replays_into_collections(self):
        queue = self.make_queue(online=False, store=self.storage.store, backend=self.backend)
        queue.enqueue(CreateRecord(table="deliveries", values={"id": "LV25070001", "qty": 800}))

        self.connectivity.went_online()

        deliveries = LocalCollection(self.storage, "deliveries")
        self.assertEqual(deliveries.read_all(), [{"id": "LV25070001", "qty": 800}])


class RestBackendTests(SimpleTestCase):
    def setUp(self):
        self.session = mock.Mock()
        self.backend = RestBackend(
            "https://xyz.example.co/",
            "secret",
            timeout=5,
            session=self.session,
        )

    def test_insert(self):
        self.backend.insert("sales", {"numero_vente": "VT25070001"})

        method, url = self.session.request.call_args.args
        kwargs = self.session.request.call_args.kwargs
        self.assertEqual(method, "POST")
        self.assertEqual(url, "https://xyz.example.co/rest/v1/sales")
        self.assertEqual(kwargs["json"], {"numero_vente": "VT25070001"})
        self.assertEqual(kwargs["timeout"], 5)
        self.assertEqual(kwargs["headers"]["apikey"], "secret")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer secret")

    def test_update_and_delete_filter_on_id(self):
        self.backend.update("deliveries", "d1", {"status": "livree"})
        self.assertEqual(self.session.request.call_args.args[0], "PATCH")
        self.assertEqual(self.session.request.call_args.kwargs["params"], {"id": "eq.d1"})

        self.backend.delete("deliveries", "d1")
        self.assertEqual(self.session.request.call_args.args[0], "DELETE")
        self.assertEqual(self.session.request.call_args.kwargs["params"], {"id": "eq.d1"})

    def test_http_error_becomes_replay_failed(self):
        response = mock.Mock()
        response.raise_for_status.side_effect = requests.HTTPError("409 Conflict")
        self.session.request.return_value = response

        with self.assertRaises(ReplayFailed):
            self.backend.insert("sales", {})

    def test_network_error_becomes_replay_failed(self):
        self.session.request.side_effect = requests.ConnectionError("down")
        with self.assertRaises(ReplayFailed):
            self.backend.delete("sales", "s1")

    def test_base_url_required(self):
        with self.assertRaises(ValueError):
            RestBackend("")


class DefaultWiringTests(SimpleTestCase):
    def test_local_backend_by_default(self):
        with override_settings(OFFLINE_BACKEND="local"):
            backend = get_default_backend(LocalStorage(MemoryStore()))
        self.assertIsInstance(backend, LocalCollectionBackend)

    @override_settings(
        OFFLINE_BACKEND="rest",
        REMOTE_BACKEND_URL="https://xyz.example.co",
        REMOTE_BACKEND_API_KEY="k",
        REMOTE_BACKEND_TIMEOUT=4.0,
    )
    def test_rest_backend(self):
        backend = get_default_backend(LocalStorage(MemoryStore()))
        self.assertIsInstance(backend, RestBackend)
        self.assertEqual(backend.timeout, 4.0)

    @override_settings(OFFLINE_BACKEND="ftp")
    def test_unknown_backend(self):
        with self.assertRaises(ValueError):
            get_default_backend(LocalStorage(MemoryStore()))

    def test_initial_connectivity_from_probe(self):
        queue = build_offline_queue(store=MemoryStore(), probe=lambda: False)
        self.assertEqual(queue.state, QueueState.OFFLINE_BUFFERING)

    @override_settings(CONNECTIVITY_PROBE_URL="", OFFLINE_ASSUME_ONLINE=False)
    def test_initial_connectivity_from_settings(self):
        queue = build_offline_queue(store=MemoryStore())
        self.assertFalse(queue.is_online)

    def test_explicit_initial_connectivity_wins(self):
        queue = build_offline_queue(
            store=MemoryStore(),
            probe=lambda: False,
            initially_online=True,
        )
        self.assertTrue(queue.is_online)


# ============================================================
# Endpoints & commands
# ============================================================

class OfflineApiTests(OfflineTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.user = User.objects.create_user(username="staff", password="pass123", is_staff=True)
        self.client.login(username="staff", password="pass123")

        self.make_queue(online=False)
        patcher = mock.patch("offline.api.get_offline_queue", return_value=self.queue)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_status(self):
        self.queue.enqueue(sale("a"))

        response = self.client.get(reverse("offline:queue_status"))

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["state"], "offline_buffering")
        self.assertFalse(data["is_online"])
        self.assertEqual(data["pending"], 1)
        self.assertEqual(data["operations"][0]["kind"], "create")

    def test_sync_while_offline(self):
        self.queue.enqueue(sale("a"))
        response = self.client.post(reverse("offline:queue_sync"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["attempted"], 0)
        self.assertEqual(response.json()["remaining"], 1)

    def test_sync_online(self):
        self.queue.enqueue(sale("a"))
        self.connectivity.set_online(True)
        self.backend.calls.clear()

        # went_online already drained, a manual sync finds nothing left
        response = self.client.post(reverse("offline:queue_sync"))

        self.assertEqual(response.json()["attempted"], 0)
        self.assertEqual(response.json()["state"], "online_idle")
        self.assertEqual(len(self.queue), 0)

    def test_status_storage_unavailable(self):
        with mock.patch.object(self.queue, "pending", side_effect=StorageUnavailable("locked")):
            response = self.client.get(reverse("offline:queue_status"))
        self.assertEqual(response.status_code, 503)

    def test_sync_requires_post(self):
        response = self.client.get(reverse("offline:queue_sync"))
        self.assertEqual(response.status_code, 405)


class SyncPendingCommandTests(OfflineTestMixin, SimpleTestCase):
    def test_offline(self):
        queue = self.make_queue(online=False)
        queue.enqueue(sale("a"))
        out = StringIO()

        with mock.patch(
            "offline.management.commands.sync_pending.get_offline_queue",
            return_value=queue,
        ):
            call_command("sync_pending", stdout=out)

        self.assertIn("Offline", out.getvalue())
        self.assertEqual(len(queue), 1)

    def test_online(self):
        queue = self.make_queue(online=True)
        queue.enqueue(sale("a"))
        queue.enqueue(sale("b"))
        out = StringIO()

        with mock.patch(
            "offline.management.commands.sync_pending.get_offline_queue",
            return_value=queue,
        ):
            call_command("sync_pending", stdout=out)

        self.assertIn("2 attempted, 2 succeeded", out.getvalue())
        self.assertEqual(len(queue), 0)
