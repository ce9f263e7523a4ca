"""
Unit tests for snapshot reconciliation
"""

from boundaries.reconciliation import ReconciliationDecision, reconcile


class TestReconcile:
    """Test the reuse/download decision"""

    def test_snapshot_covers_everything(self):
        result = reconcile([1, 2, 3], [3, 2, 1, 99])

        assert result.decision == ReconciliationDecision.REUSE_ALL
        assert result.existing == [1, 2, 3]
        assert result.to_download == []

    def test_partial_snapshot(self):
        """Missing ids keep discovery order"""
        result = reconcile([5, 1, 4, 2], [1, 2])

        assert result.decision == ReconciliationDecision.REUSE_SUBSET
        assert result.existing == [1, 2]
        assert result.missing == [5, 4]

    def test_disjoint_snapshot(self):
        result = reconcile([1, 2], [3, 4])

        assert result.decision == ReconciliationDecision.DOWNLOAD_ALL
        assert result.missing == [1, 2]

    def test_no_snapshot(self):
        result = reconcile([1, 2], None)

        assert result.decision == ReconciliationDecision.DOWNLOAD_ALL
        assert result.existing == []
        assert result.missing == [1, 2]

    def test_force_refresh_ignores_snapshot(self):
        result = reconcile([1, 2], [1, 2], force_refresh=True)

        assert result.decision == ReconciliationDecision.DOWNLOAD_ALL
        assert result.missing == [1, 2]

    def test_duplicates_collapse(self):
        result = reconcile([1, 1, 2], [])

        assert result.missing == [1, 2]

    def test_empty_authoritative_list(self):
        result = reconcile([], [1, 2])

        assert result.decision == ReconciliationDecision.REUSE_ALL
        assert result.to_download == []
