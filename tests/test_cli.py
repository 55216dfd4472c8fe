import unittest
import io
import os
import sys
import tempfile
from unittest.mock import patch

# Add the project root to the path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from kpe.cli import (
    EXIT_CONFIG_ERROR,
    EXIT_OK,
    EXIT_PARTITIONS_FAILED,
    EXIT_RANGE_QUERY_FAILED,
    create_parser,
    main,
)
from kpe.errors import ServiceError
from kpe.operations import OperationState
from fakes import FakeAdminService, FakeQueryService

BASE_ARGS = [
    '--cluster', 'https://mycluster.westeurope.kusto.windows.net',
    '--database', 'Telemetry',
    '--table', 'Events',
    '--external-table', 'EventsArchive',
    '--interval-minutes', '30',
    '--wait-timeout-minutes', '0.1',
    '--poll-interval-seconds', '0.01',
    '--no-color',
]


@patch('kpe.cli.load_dotenv')
@patch.dict(os.environ, {}, clear=True)
class TestMain(unittest.TestCase):

    def test_successful_run(self, _):
        admin = FakeAdminService()
        code = main(BASE_ARGS, services=(FakeQueryService(), admin))
        self.assertEqual(code, EXIT_OK)
        self.assertEqual(len(admin.submissions), 4)
        self.assertEqual(admin.submissions[0]['database'], 'Telemetry')

    def test_failed_partition_sets_exit_code(self, _):
        admin = FakeAdminService(states=[OperationState.COMPLETED, OperationState.FAILED])
        code = main(BASE_ARGS, services=(FakeQueryService(), admin))
        self.assertEqual(code, EXIT_PARTITIONS_FAILED)
        self.assertEqual(len(admin.submissions), 4)

    def test_abort_policy_from_command_line(self, _):
        admin = FakeAdminService(states=[OperationState.FAILED])
        code = main(BASE_ARGS + ['--on-failure', 'abort'], services=(FakeQueryService(), admin))
        self.assertEqual(code, EXIT_PARTITIONS_FAILED)
        self.assertEqual(len(admin.submissions), 1)

    def test_missing_table_is_a_config_error(self, _):
        args = [a for a in BASE_ARGS if a not in ('--table', 'Events')]
        admin = FakeAdminService()
        self.assertEqual(main(args, services=(FakeQueryService(), admin)), EXIT_CONFIG_ERROR)
        self.assertEqual(admin.submissions, [])

    def test_range_query_failure(self, _):
        admin = FakeAdminService()
        query = FakeQueryService(error=ServiceError("Request is not authorized"))
        self.assertEqual(main(BASE_ARGS, services=(query, admin)), EXIT_RANGE_QUERY_FAILED)
        self.assertEqual(admin.submissions, [])

    def test_environment_supplies_defaults(self, _):
        os.environ.update({
            'KPE_CLUSTER_URI': 'https://mycluster.westeurope.kusto.windows.net',
            'KPE_DATABASE': 'Telemetry',
            'KPE_TABLE': 'Events',
            'KPE_EXTERNAL_TABLE': 'EventsArchive',
            'KPE_INTERVAL_MINUTES': '60',
            'KPE_WAIT_TIMEOUT_MINUTES': '0.1',
            'KPE_POLL_INTERVAL_SECONDS': '0.01',
        })
        admin = FakeAdminService()
        self.assertEqual(main(['--no-color'], services=(FakeQueryService(), admin)), EXIT_OK)
        self.assertEqual(len(admin.submissions), 2)

    def test_dry_run_submits_nothing(self, _):
        admin = FakeAdminService()
        with patch('sys.stdout', new_callable=io.StringIO) as out:
            code = main(BASE_ARGS + ['--dry-run'], services=(FakeQueryService(), admin))
        self.assertEqual(code, EXIT_OK)
        self.assertEqual(admin.submissions, [])
        printed = out.getvalue()
        self.assertIn('4 partitions', printed)
        self.assertEqual(printed.count('.export async to table'), 4)

    def test_report_written(self, _):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'run.csv')
            code = main(BASE_ARGS + ['--report', path], services=(FakeQueryService(), FakeAdminService()))
            self.assertEqual(code, EXIT_OK)
            with open(path) as f:
                lines = f.read().splitlines()
        self.assertEqual(len(lines), 5)
        self.assertTrue(lines[0].startswith('run_id,partition,begin,end'))

    def test_unsupported_report_format_rejected_before_export(self, _):
        admin = FakeAdminService()
        with patch('sys.stderr', new_callable=io.StringIO) as err:
            with self.assertRaises(SystemExit) as ctx:
                main(BASE_ARGS + ['--report', 'run.txt'], services=(FakeQueryService(), admin))
        self.assertEqual(ctx.exception.code, 2)
        self.assertIn('unsupported report format', err.getvalue())
        self.assertEqual(admin.submissions, [])

    def test_report_write_failure_keeps_run_exit_code(self, _):
        admin = FakeAdminService(states=[OperationState.FAILED])
        with tempfile.TemporaryDirectory() as tmp:
            blocker = os.path.join(tmp, 'not_a_dir')
            with open(blocker, 'w') as f:
                f.write('x')
            with self.assertLogs('KPE', level='ERROR') as logs:
                code = main(BASE_ARGS + ['--report', os.path.join(blocker, 'run.csv')],
                            services=(FakeQueryService(), admin))
        self.assertEqual(code, EXIT_PARTITIONS_FAILED)
        self.assertEqual(len(admin.submissions), 4)
        self.assertTrue(any('Could not write run report' in line for line in logs.output))


class TestParser(unittest.TestCase):

    def test_invalid_timestamp_rejected(self):
        with patch('sys.stderr', new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                create_parser().parse_args(['--from', 'yesterday'])

    def test_window_arguments_parsed(self):
        args = create_parser().parse_args(['--from', '2024-01-01', '--to', '2024-01-02T12:00:00Z'])
        self.assertEqual(args.range_start.isoformat(), '2024-01-01T00:00:00+00:00')
        self.assertEqual(args.range_end.hour, 12)


if __name__ == '__main__':
    unittest.main()
