"""Blueprint progress is a pure projection of total build points."""

from dungeon.ledger.build_service import CATHEDRAL_V1, compute_blueprint_progress, get_blueprint


class TestBlueprintProgress:
    def test_nothing_built(self):
        progress = compute_blueprint_progress(0, CATHEDRAL_V1)
        assert progress.completion_pct == 0
        assert progress.current_segment is not None
        assert progress.current_segment.key == "foundation"
        assert progress.current_segment_pct == 0

    def test_partial_first_segment(self):
        progress = compute_blueprint_progress(150, CATHEDRAL_V1)
        assert progress.current_segment.key == "foundation"
        assert progress.current_segment_pct == 50
        assert progress.segments[0].points_applied == 150

    def test_segments_fill_in_order(self):
        progress = compute_blueprint_progress(300 + 225, CATHEDRAL_V1)
        assert progress.segments[0].completed is True
        assert progress.current_segment.key == "choir_footings"
        assert progress.current_segment_pct == 50
        assert progress.segments[2].points_applied == 0

    def test_complete(self):
        progress = compute_blueprint_progress(CATHEDRAL_V1.total_cost, CATHEDRAL_V1)
        assert progress.completion_pct == 100
        assert progress.current_segment is None
        assert progress.current_segment_pct == 100
        assert all(s.completed for s in progress.segments)

    def test_excess_points_do_not_overflow(self):
        progress = compute_blueprint_progress(CATHEDRAL_V1.total_cost + 5000, CATHEDRAL_V1)
        assert progress.completion_pct == 100
        assert sum(s.points_applied for s in progress.segments) == CATHEDRAL_V1.total_cost

    def test_default_blueprint(self):
        assert get_blueprint() is CATHEDRAL_V1
        assert get_blueprint(CATHEDRAL_V1.id) is CATHEDRAL_V1
