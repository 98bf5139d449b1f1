from __future__ import annotations

from circdesk import LoanStatus, seed_demo_data


def test_seed_demo_data(system, capsys):
    seed_demo_data(system)

    assert "[seed] borrowing stats" in capsys.readouterr().out
    assert len(system.student_transactions("C22-0044")) == 2
    assert system.borrowing_stats()["available_books"] == 1

    outcomes = system.force_reconciliation()

    assert len(outcomes) == 1
    [loan] = system.student_transactions("A23-0310")
    assert loan.status is LoanStatus.OVERDUE
    assert system.get_fines("A23-0310")[0].days_overdue == 3
