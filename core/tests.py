# core/tests.py

import threading
from datetime import datetime
from io import StringIO
from unittest import mock

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import DatabaseError, transaction
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from core.domain.dispatcher import DomainEventDispatcher
from core.domain.events import DomainEvent
from core.exceptions import CounterCorrupted, StorageUnavailable
from core.models import DocumentKind, LocalEntry
from core.services.collections import (
    DEFAULT_COLLECTIONS,
    LocalCollection,
    init_collections,
)
from core.services.numbering import (
    DocumentNumberGenerator,
    format_document_number,
    get_number_generator,
)
from core.services.storage import (
    DatabaseStore,
    LocalStorage,
    MemoryStore,
    get_default_store,
)

User = get_user_model()

JULY_2025 = datetime(2025, 7, 14, 9, 30)


class BrokenStore:
    """
    Store whose every call fails, like a locked or missing database.
    """

    def get(self, key):
        raise StorageUnavailable("store is down")

    def set(self, key, value):
        raise StorageUnavailable("store is down")

    def update(self, key, func):
        raise StorageUnavailable("store is down")

    def delete(self, key):
        raise StorageUnavailable("store is down")

    def keys(self, prefix=""):
        raise StorageUnavailable("store is down")


class DocumentKindTests(SimpleTestCase):
    def test_prefixes(self):
        self.assertEqual(DocumentKind.PRODUCTION_ORDER.prefix, "OP")
        self.assertEqual(DocumentKind.DELIVERY.prefix, "LV")
        self.assertEqual(DocumentKind.SALE.prefix, "VT")
        self.assertEqual(DocumentKind.QUOTE.prefix, "DV")
        self.assertEqual(DocumentKind.INVOICE.prefix, "FC")

    def test_counter_keys(self):
        self.assertEqual(
            DocumentKind.PRODUCTION_ORDER.counter_key,
            "last_production_order_number",
        )
        self.assertEqual(DocumentKind.INVOICE.counter_key, "last_invoice_number")


class DocumentNumberGeneratorTests(SimpleTestCase):
    def setUp(self):
        self.store = MemoryStore()
        self.now = JULY_2025
        self.generator = DocumentNumberGenerator(self.store, clock=lambda: self.now)

    def test_first_number_when_counter_is_absent(self):
        number = self.generator.next_number(DocumentKind.PRODUCTION_ORDER)
        self.assertEqual(number, "OP25070001")
        self.assertEqual(self.store.get("last_production_order_number"), "1")

    def test_next_sale_number_after_42(self):
        self.store.set("last_sale_number", "42")
        self.assertEqual(self.generator.next_number("sale"), "VT25070043")
        self.assertEqual(self.store.get("last_sale_number"), "43")

    def test_sequential_calls_increase_by_one(self):
        numbers = [self.generator.next_number(DocumentKind.QUOTE) for _ in range(25)]

        suffixes = [int(n[-4:]) for n in numbers]
        self.assertEqual(suffixes, list(range(1, 26)))
        self.assertEqual(len(set(numbers)), 25)
        for number in numbers:
            self.assertTrue(number.startswith("DV2507"))

    def test_kinds_have_independent_sequences(self):
        self.assertEqual(self.generator.next_number("sale"), "VT25070001")
        self.assertEqual(self.generator.next_number("sale"), "VT25070002")
        self.assertEqual(self.generator.next_number("invoice"), "FC25070001")
        self.assertEqual(self.generator.next_number("delivery"), "LV25070001")

    def test_date_is_taken_at_call_time(self):
        self.assertEqual(self.generator.next_number("invoice"), "FC25070001")
        self.now = datetime(2026, 1, 2, 8, 0)
        # Le compteur continue, seul le préfixe de date change
        self.assertEqual(self.generator.next_number("invoice"), "FC26010002")

    def test_sequence_above_9999_widens(self):
        self.store.set("last_delivery_number", "9999")
        self.assertEqual(self.generator.next_number("delivery"), "LV250710000")

    def test_integer_counter_is_accepted(self):
        self.store.set("last_sale_number", 7)
        self.assertEqual(self.generator.next_number("sale"), "VT25070008")

    def test_corrupted_counter_raises_and_writes_nothing(self):
        for raw in ["abc", "", "-3", "4.5", 2.5, [], {"v": 1}, True]:
            with self.subTest(raw=raw):
                self.store.set("last_sale_number", raw)
                with self.assertRaises(CounterCorrupted) as ctx:
                    self.generator.next_number("sale")
                self.assertEqual(ctx.exception.key, "last_sale_number")
                self.assertEqual(self.store.get("last_sale_number"), raw)

    def test_storage_failure_propagates(self):
        generator = DocumentNumberGenerator(BrokenStore(), clock=lambda: self.now)
        with self.assertRaises(StorageUnavailable):
            generator.next_number("sale")

    def test_unknown_kind_is_rejected(self):
        with self.assertRaises(ValueError):
            self.generator.next_number("purchase")
        self.assertEqual(self.store.keys(), [])

    def test_current_value(self):
        self.assertEqual(self.generator.current_value("quote").last_value, 0)
        self.generator.next_number("quote")
        counter = self.generator.current_value("quote")
        self.assertEqual(counter.document_kind, DocumentKind.QUOTE)
        self.assertEqual(counter.last_value, 1)

    def test_reset(self):
        self.store.set("last_quote_number", "120")
        self.generator.reset("quote", 41)
        self.assertEqual(self.generator.next_number("quote"), "DV25070042")

    def test_reset_rejects_negative_values(self):
        with self.assertRaises(ValueError):
            self.generator.reset("quote", -1)

    def test_concurrent_callers_get_distinct_numbers(self):
        results = []
        results_lock = threading.Lock()

        def worker():
            for _ in range(10):
                number = self.generator.next_number("sale")
                with results_lock:
                    results.append(number)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(results), 80)
        self.assertEqual(len(set(results)), 80)
        self.assertEqual(self.store.get("last_sale_number"), "80")

    def test_format_document_number(self):
        self.assertEqual(format_document_number("OP", 5, datetime(2024, 11, 30)), "OP24110005")


class MemoryStoreTests(SimpleTestCase):
    def test_values_are_copied(self):
        store = MemoryStore()
        value = {"items": [1, 2]}
        store.set("k", value)
        value["items"].append(3)

        loaded = store.get("k")
        self.assertEqual(loaded, {"items": [1, 2]})
        loaded["items"].append(4)
        self.assertEqual(store.get("k"), {"items": [1, 2]})

    def test_keys_delete(self):
        store = MemoryStore({"a_1": 1, "a_2": 2, "b_1": 3})
        self.assertEqual(store.keys("a_"), ["a_1", "a_2"])
        store.delete("a_1")
        store.delete("missing")
        self.assertIsNone(store.get("a_1"))
        self.assertEqual(store.keys(), ["a_2", "b_1"])

    def test_update(self):
        store = MemoryStore({"n": 1})
        self.assertEqual(store.update("n", lambda v: v + 1), 2)
        self.assertEqual(store.update("absent", lambda v: [v]), [None])
        self.assertEqual(store.get("n"), 2)

    def test_failed_update_writes_nothing(self):
        store = MemoryStore({"n": 1})

        def refuse(value):
            raise CounterCorrupted("n", value)

        with self.assertRaises(CounterCorrupted):
            store.update("n", refuse)
        with self.assertRaises(CounterCorrupted):
            store.update("absent", refuse)
        self.assertEqual(store.keys(), ["n"])
        self.assertEqual(store.get("n"), 1)


class DatabaseStoreTests(TestCase):
    def setUp(self):
        self.store = DatabaseStore()

    def test_set_get_overwrite(self):
        self.assertIsNone(self.store.get("last_sale_number"))
        self.store.set("last_sale_number", "1")
        self.store.set("last_sale_number", "2")
        self.assertEqual(self.store.get("last_sale_number"), "2")
        self.assertEqual(LocalEntry.objects.filter(key="last_sale_number").count(), 1)

    def test_json_values(self):
        self.store.set("cornerstone_sales", {"data": [{"id": "1"}], "timestamp": "x"})
        self.assertEqual(
            self.store.get("cornerstone_sales"),
            {"data": [{"id": "1"}], "timestamp": "x"},
        )

    def test_keys_and_delete(self):
        self.store.set("cornerstone_a", 1)
        self.store.set("cornerstone_b", 2)
        self.store.set("last_sale_number", "3")
        self.assertEqual(sorted(self.store.keys("cornerstone_")), ["cornerstone_a", "cornerstone_b"])
        self.store.delete("cornerstone_a")
        self.assertEqual(sorted(self.store.keys()), ["cornerstone_b", "last_sale_number"])

    def test_database_error_becomes_storage_unavailable(self):
        with mock.patch.object(
            LocalEntry.objects, "update_or_create", side_effect=DatabaseError("locked")
        ):
            with self.assertRaises(StorageUnavailable):
                self.store.set("k", 1)

    def test_generator_persists_counter_in_table(self):
        generator = DocumentNumberGenerator(self.store, clock=lambda: JULY_2025)
        self.assertEqual(generator.next_number("production_order"), "OP25070001")
        self.assertEqual(generator.next_number("production_order"), "OP25070002")
        entry = LocalEntry.objects.get(key="last_production_order_number")
        self.assertEqual(entry.value, "2")

    def test_update_locks_the_row_in_a_transaction(self):
        with mock.patch(
            "core.services.storage.transaction.atomic", wraps=transaction.atomic
        ) as atomic, mock.patch.object(
            LocalEntry.objects,
            "select_for_update",
            wraps=LocalEntry.objects.select_for_update,
        ) as select_for_update:
            self.assertEqual(self.store.update("last_sale_number", lambda raw: "1"), "1")

        atomic.assert_any_call()
        select_for_update.assert_called_once_with()
        self.assertEqual(self.store.get("last_sale_number"), "1")

    def test_failed_update_leaves_no_row(self):
        def refuse(raw):
            raise CounterCorrupted("last_sale_number", raw)

        with self.assertRaises(CounterCorrupted):
            self.store.update("last_sale_number", refuse)
        self.assertFalse(LocalEntry.objects.filter(key="last_sale_number").exists())

    def test_update_database_error_becomes_storage_unavailable(self):
        with mock.patch.object(
            LocalEntry.objects, "select_for_update", side_effect=DatabaseError("locked")
        ):
            with self.assertRaises(StorageUnavailable):
                self.store.update("last_sale_number", lambda raw: "1")

    def test_generators_sharing_the_table_never_repeat(self):
        # Deux workers (gunicorn, commande de gestion) sur la même table
        web = DocumentNumberGenerator(DatabaseStore(), clock=lambda: JULY_2025)
        worker = DocumentNumberGenerator(DatabaseStore(), clock=lambda: JULY_2025)

        numbers = []
        for _ in range(5):
            numbers.append(web.next_number("sale"))
            numbers.append(worker.next_number("sale"))

        self.assertEqual(numbers, [f"VT2507{n:04d}" for n in range(1, 11)])
        self.assertEqual(LocalEntry.objects.get(key="last_sale_number").value, "10")

    def test_increment_does_not_read_outside_the_update(self):
        generator = DocumentNumberGenerator(self.store, clock=lambda: JULY_2025)
        self.store.set("last_sale_number", "42")

        with mock.patch.object(DatabaseStore, "get", side_effect=AssertionError("unlocked read")):
            self.assertEqual(generator.next_number("sale"), "VT25070043")


class DefaultStoreTests(SimpleTestCase):
    @override_settings(LOCAL_STORAGE_BACKEND="memory")
    def test_memory_backend(self):
        self.assertIsInstance(get_default_store(), MemoryStore)

    @override_settings(LOCAL_STORAGE_BACKEND="database")
    def test_database_backend(self):
        self.assertIsInstance(get_default_store(), DatabaseStore)

    @override_settings(LOCAL_STORAGE_BACKEND="redis")
    def test_unknown_backend(self):
        with self.assertRaises(ValueError):
            get_default_store()


class LocalStorageTests(SimpleTestCase):
    def setUp(self):
        self.store = MemoryStore()
        self.storage = LocalStorage(self.store, namespace="cornerstone_")

    def test_round_trip(self):
        value = {
            "client": "Entreprise Kodjo",
            "lines": [{"product": "Brique creuse 15", "qty": 500}],
            "paid": False,
            "total": 187500.5,
        }
        self.storage.save_local("draft_sale", value)
        self.assertEqual(self.storage.load_local("draft_sale"), value)

    def test_envelope_has_timestamp(self):
        self.storage.save_local("draft_sale", [1, 2])
        raw = self.store.get("cornerstone_draft_sale")
        self.assertEqual(raw["data"], [1, 2])
        self.assertIn("timestamp", raw)
        self.assertEqual(self.storage.saved_at("draft_sale"), raw["timestamp"])

    def test_absent_key(self):
        self.assertIsNone(self.storage.load_local("missing"))
        self.assertIsNone(self.storage.saved_at("missing"))

    def test_malformed_envelope_returns_none(self):
        self.store.set("cornerstone_broken", "not an envelope")
        with self.assertLogs("core.services.storage", level="WARNING"):
            self.assertIsNone(self.storage.load_local("broken"))

    def test_non_serializable_value(self):
        with self.assertRaises(TypeError):
            self.storage.save_local("bad", object())
        self.assertIsNone(self.store.get("cornerstone_bad"))

    def test_values_that_would_not_come_back_equal_are_refused(self):
        for value in [{1: "a"}, ("a", "b"), {"lines": [(1, 2)]}, float("nan"), {"x": {2}}]:
            with self.subTest(value=value):
                with self.assertRaises(TypeError):
                    self.storage.save_local("bad", value)
        self.assertIsNone(self.store.get("cornerstone_bad"))

    def test_update_local(self):
        self.storage.save_local("visits", [1])

        result = self.storage.update_local("visits", lambda value: value + [2])

        self.assertEqual(result, [1, 2])
        self.assertEqual(self.storage.load_local("visits"), [1, 2])
        self.assertIn("timestamp", self.store.get("cornerstone_visits"))
        self.assertEqual(self.storage.update_local("fresh", lambda value: value or []), [])

    def test_update_local_refuses_bad_values(self):
        self.storage.save_local("visits", [1])
        with self.assertRaises(TypeError):
            self.storage.update_local("visits", lambda value: (1, 2))
        self.assertEqual(self.storage.load_local("visits"), [1])

    def test_clear_local_data_keeps_counters(self):
        self.store.set("last_sale_number", "12")
        self.storage.save_local("sales", [])
        self.storage.save_local("pending_operations", [])

        removed = self.storage.clear_local_data()

        self.assertEqual(removed, 2)
        self.assertEqual(self.store.keys(), ["last_sale_number"])

    def test_local_keys(self):
        self.storage.save_local("sales", [])
        self.storage.save_local("quotes", [])
        self.assertEqual(sorted(self.storage.local_keys()), ["quotes", "sales"])

    @override_settings(LOCAL_STORAGE_NAMESPACE="test_")
    def test_namespace_from_settings(self):
        storage = LocalStorage(self.store)
        storage.save_local("x", 1)
        self.assertEqual(self.store.keys(), ["test_x"])


class LocalCollectionTests(SimpleTestCase):
    def setUp(self):
        self.storage = LocalStorage(MemoryStore())
        self.sales = LocalCollection(self.storage, "sales")

    def test_empty_collection(self):
        self.assertEqual(self.sales.read_all(), [])

    def test_create_assigns_id(self):
        record = self.sales.create({"customer_name": "Kossi"})
        self.assertTrue(record["id"])
        self.assertEqual(self.sales.read_all(), [record])
        self.assertEqual(self.sales.get(record["id"]), record)

    def test_create_duplicate_id(self):
        self.sales.create({"id": "s1"})
        with self.assertRaises(ValueError):
            self.sales.create({"id": "s1"})

    def test_update(self):
        self.sales.create({"id": "s1", "status": "pending"})
        self.assertTrue(self.sales.update({"id": "s1", "status": "completed"}))
        self.assertEqual(self.sales.get("s1"), {"id": "s1", "status": "completed"})

    def test_update_unknown_id_is_a_noop(self):
        self.assertFalse(self.sales.update({"id": "nope", "status": "completed"}))
        self.assertEqual(self.sales.read_all(), [])

    def test_delete(self):
        self.sales.create({"id": "s1"})
        self.sales.create({"id": "s2"})
        self.assertTrue(self.sales.delete("s1"))
        self.assertFalse(self.sales.delete("s1"))
        self.assertEqual([r["id"] for r in self.sales.read_all()], ["s2"])

    def test_clear(self):
        self.sales.create({"id": "s1"})
        self.sales.clear()
        self.assertEqual(self.sales.read_all(), [])

    def test_reserved_name(self):
        with self.assertRaises(ValueError):
            LocalCollection(self.storage, "pending_operations")

    def test_init_collections(self):
        self.sales.create({"id": "s1"})
        created = init_collections(self.storage)
        self.assertNotIn("sales", created)
        self.assertEqual(set(created), set(DEFAULT_COLLECTIONS) - {"sales"})
        self.assertEqual(len(self.sales.read_all()), 1)
        self.assertEqual(init_collections(self.storage), [])


class DomainEventDispatcherTests(SimpleTestCase):
    def test_handlers_run_in_order_and_errors_are_isolated(self):
        dispatcher = DomainEventDispatcher()
        calls = []

        def failing(event):
            calls.append("failing")
            raise RuntimeError("boom")

        def second(event):
            calls.append("second")

        dispatcher.subscribe(DomainEvent, failing)
        dispatcher.subscribe(DomainEvent, second)

        with self.assertLogs("core.domain.dispatcher", level="ERROR"):
            dispatcher.emit(DomainEvent())

        self.assertEqual(calls, ["failing", "second"])

    def test_unsubscribe(self):
        dispatcher = DomainEventDispatcher()
        calls = []
        handler = calls.append
        dispatcher.subscribe(DomainEvent, handler)
        dispatcher.unsubscribe(DomainEvent, handler)
        dispatcher.emit(DomainEvent())
        self.assertEqual(calls, [])


class NumberingApiTests(TestCase):
    def setUp(self):
        super().setUp()
        get_number_generator.cache_clear()
        self.addCleanup(get_number_generator.cache_clear)

        self.user = User.objects.create_user(username="staff", password="pass123", is_staff=True)
        self.client.login(username="staff", password="pass123")

    def test_next_number(self):
        url = reverse("core:next_document_number", kwargs={"kind": "sale"})

        first = self.client.post(url)
        second = self.client.post(url)

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["kind"], "sale")
        self.assertTrue(first.json()["number"].startswith("VT"))
        self.assertTrue(first.json()["number"].endswith("0001"))
        self.assertTrue(second.json()["number"].endswith("0002"))

    def test_unknown_kind(self):
        url = reverse("core:next_document_number", kwargs={"kind": "purchase"})
        response = self.client.post(url)
        self.assertEqual(response.status_code, 400)

    def test_corrupted_counter(self):
        LocalEntry.objects.create(key="last_invoice_number", value="abc")
        url = reverse("core:next_document_number", kwargs={"kind": "invoice"})
        response = self.client.post(url)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(LocalEntry.objects.get(key="last_invoice_number").value, "abc")

    def test_storage_unavailable(self):
        url = reverse("core:next_document_number", kwargs={"kind": "invoice"})
        with mock.patch(
            "core.api.get_number_generator",
            return_value=DocumentNumberGenerator(BrokenStore()),
        ):
            response = self.client.post(url)
        self.assertEqual(response.status_code, 503)

    def test_get_not_allowed(self):
        url = reverse("core:next_document_number", kwargs={"kind": "sale"})
        response = self.client.get(url)
        self.assertEqual(response.status_code, 405)

    def test_login_required(self):
        self.client.logout()
        url = reverse("core:next_document_number", kwargs={"kind": "sale"})
        response = self.client.post(url)
        self.assertEqual(response.status_code, 302)
        self.assertFalse(LocalEntry.objects.filter(key="last_sale_number").exists())

    def test_counters_listing(self):
        LocalEntry.objects.create(key="last_sale_number", value="42")
        LocalEntry.objects.create(key="last_quote_number", value="oops")

        response = self.client.get(reverse("core:document_counters"))

        self.assertEqual(response.status_code, 200)
        by_kind = {row["kind"]: row for row in response.json()["results"]}
        self.assertEqual(by_kind["sale"]["last_value"], 42)
        self.assertEqual(by_kind["sale"]["prefix"], "VT")
        self.assertIsNone(by_kind["quote"]["last_value"])
        self.assertEqual(by_kind["invoice"]["last_value"], 0)


class ManagementCommandTests(TestCase):
    def setUp(self):
        super().setUp()
        get_number_generator.cache_clear()
        self.addCleanup(get_number_generator.cache_clear)

    def test_reset_and_show_counters(self):
        call_command("reset_counter", "delivery", "--value", "41", stdout=StringIO())
        self.assertEqual(LocalEntry.objects.get(key="last_delivery_number").value, "41")

        out = StringIO()
        call_command("show_counters", stdout=out)
        self.assertIn("delivery", out.getvalue())
        self.assertIn("41", out.getvalue())

    def test_clear_local_data_keeps_counters(self):
        storage = LocalStorage(DatabaseStore())
        storage.save_local("sales", [{"id": "s1"}])
        LocalEntry.objects.create(key="last_sale_number", value="3")

        call_command("clear_local_data", "--noinput", stdout=StringIO())

        self.assertEqual(
            list(LocalEntry.objects.values_list("key", flat=True)),
            ["last_sale_number"],
        )
