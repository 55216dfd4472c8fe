import unittest
import os
import sys
from datetime import datetime, timedelta, timezone

# Add the project root to the path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from kpe.commands import (
    ExportToExternalTableCommand,
    IngestionTimeFilter,
    OperationRecordCountCommand,
    ShowOperationCommand,
    datetime_literal,
    quote_name,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
OPERATION_ID = "3f2504e0-4f89-11d3-9a0c-0305e82c3301"


class TestLiterals(unittest.TestCase):

    def test_quote_name(self):
        self.assertEqual(quote_name("Events"), "['Events']")
        self.assertEqual(quote_name("My Table"), "['My Table']")
        self.assertEqual(quote_name("x'] | drop"), "['x\\'] | drop']")

    def test_quote_name_rejects_empty(self):
        with self.assertRaises(ValueError):
            quote_name("  ")

    def test_datetime_literal_is_utc(self):
        self.assertEqual(datetime_literal(T0), "datetime(2024-01-01T00:00:00.000000Z)")
        plus_two = timezone(timedelta(hours=2))
        self.assertEqual(datetime_literal(datetime(2024, 1, 1, 2, 0, tzinfo=plus_two)),
                         "datetime(2024-01-01T00:00:00.000000Z)")
        self.assertEqual(datetime_literal(datetime(2024, 5, 6, 7, 8, 9, 123456)),
                         "datetime(2024-05-06T07:08:09.123456Z)")

    def test_datetime_literal_rejects_strings(self):
        with self.assertRaises(TypeError):
            datetime_literal("2024-01-01) | .drop table T <| (")


class TestCommands(unittest.TestCase):

    def test_export_command(self):
        command = ExportToExternalTableCommand(
            external_table_name="EventsArchive",
            table_name="Events",
            row_filter=IngestionTimeFilter(T0, T0 + timedelta(minutes=30)),
            size_limit_bytes=1024,
        )
        self.assertEqual(
            command.render(),
            ".export async to table ['EventsArchive'] with (sizeLimit=1024, persistDetails=true) "
            "<| ['Events'] | where ingestion_time() >= datetime(2024-01-01T00:00:00.000000Z) "
            "and ingestion_time() < datetime(2024-01-01T00:30:00.000000Z)")

    def test_sync_export_without_size_limit(self):
        command = ExportToExternalTableCommand(
            external_table_name="Ext",
            table_name="T",
            row_filter=IngestionTimeFilter(T0, T0 + timedelta(hours=1), end_inclusive=True),
            persist_details=False,
            is_async=False,
        )
        rendered = command.render()
        self.assertTrue(rendered.startswith(".export to table ['Ext'] with (persistDetails=false) <| "))
        self.assertIn("ingestion_time() < datetime(2024-01-01T01:00:00.000001Z)", rendered)
        self.assertNotIn("<=", rendered)

    def test_operation_commands(self):
        self.assertEqual(ShowOperationCommand(OPERATION_ID).render(), f".show operations {OPERATION_ID}")
        self.assertEqual(OperationRecordCountCommand(OPERATION_ID).render(),
                         f".show operation {OPERATION_ID} details | summarize NumRecords=sum(NumRecords)")

    def test_operation_id_must_be_a_guid(self):
        with self.assertRaises(ValueError):
            ShowOperationCommand("1; .drop table T").render()
        with self.assertRaises(ValueError):
            OperationRecordCountCommand("").render()


if __name__ == '__main__':
    unittest.main()
