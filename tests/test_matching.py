import unittest

from matching import (
    METHOD_FACE,
    METHOD_FINGERPRINT,
    METHOD_QR,
    OUTCOME_BELOW_THRESHOLD,
    OUTCOME_INPUT_MISSING,
    OUTCOME_MATCHED,
    OUTCOME_NO_CANDIDATES,
    OUTCOME_NOT_FOUND,
    FaceProbe,
    FingerprintProbe,
    QrProbe,
    VerificationEngine,
    VisitorRecord,
    euclidean_distance,
    probe_from_request,
    template_similarity,
)

L = 128


def descriptor(offset=0.0, base=0.1):
    """Descriptor of length L whose first component is shifted by `offset`."""
    values = [base] * L
    values[0] += offset
    return values


class TestDistanceFunctions(unittest.TestCase):
    def test_identical_descriptors_have_zero_distance(self):
        self.assertEqual(euclidean_distance(descriptor(), descriptor()), 0.0)

    def test_length_mismatch_is_infinite(self):
        self.assertEqual(euclidean_distance([0.1, 0.2], [0.1, 0.2, 0.3]), float("inf"))

    def test_single_axis_offset(self):
        self.assertEqual(euclidean_distance([0.6, 0.0], [0.0, 0.0]), 0.6)

    def test_template_similarity_uses_longest_length(self):
        self.assertEqual(template_similarity([1, 1, 1, 1], [1, 1, 1]), 0.75)
        self.assertEqual(template_similarity([1, 1, 1], [1, 1, 1, 1]), 0.75)

    def test_template_similarity_empty(self):
        self.assertEqual(template_similarity([], []), 0.0)

    def test_template_similarity_booleans_differ_from_numbers(self):
        self.assertEqual(template_similarity([True, False], [1, 0]), 0.0)
        self.assertEqual(template_similarity([True, False], [True, 1]), 0.5)
        self.assertEqual(template_similarity([1, 2], [1.0, 2.0]), 1.0)


class TestFaceMatching(unittest.TestCase):
    def setUp(self):
        self.engine = VerificationEngine(face_threshold=0.6, fingerprint_threshold=0.7)
        self.a = VisitorRecord(id="a", name="A", face_descriptor=descriptor())
        self.b = VisitorRecord(id="b", name="B", face_descriptor=descriptor(0.3))
        self.c = VisitorRecord(id="c", name="C", face_descriptor=descriptor(0.9))

    def test_best_of_three(self):
        result = self.engine.verify_by_face(descriptor(), [self.a, self.b, self.c])
        self.assertTrue(result.accepted)
        self.assertIs(result.visitor, self.a)
        self.assertEqual(result.confidence, 1.0)
        self.assertEqual(result.method, METHOD_FACE)
        self.assertEqual(result.outcome, OUTCOME_MATCHED)

    def test_closest_wins_regardless_of_order(self):
        result = self.engine.verify_by_face(descriptor(0.25), [self.c, self.a, self.b])
        self.assertIs(result.visitor, self.b)

    def test_threshold_boundary_accepted_with_zero_confidence(self):
        probe = [0.6] + [0.0] * (L - 1)
        candidate = VisitorRecord(id="z", face_descriptor=[0.0] * L)
        result = self.engine.verify_by_face(probe, [candidate])
        self.assertTrue(result.accepted)
        self.assertEqual(result.confidence, 0.0)

    def test_just_past_threshold_rejected(self):
        probe = [0.60001] + [0.0] * (L - 1)
        candidate = VisitorRecord(id="z", face_descriptor=[0.0] * L)
        result = self.engine.verify_by_face(probe, [candidate])
        self.assertFalse(result.accepted)
        self.assertIsNone(result.visitor)
        self.assertEqual(result.confidence, 0.0)
        self.assertEqual(result.outcome, OUTCOME_BELOW_THRESHOLD)
        self.assertEqual(result.message, "Face not recognized")

    def test_confidence_scales_with_distance(self):
        result = self.engine.verify_by_face(descriptor(0.3), [self.a])
        self.assertAlmostEqual(result.confidence, 0.5, places=6)

    def test_tie_goes_to_first_candidate(self):
        twin = VisitorRecord(id="twin", face_descriptor=descriptor())
        result = self.engine.verify_by_face(descriptor(), [self.a, twin])
        self.assertIs(result.visitor, self.a)
        result = self.engine.verify_by_face(descriptor(), [twin, self.a])
        self.assertIs(result.visitor, twin)

    def test_length_mismatch_skips_candidate(self):
        short = VisitorRecord(id="short", face_descriptor=[0.1, 0.1, 0.1])
        result = self.engine.verify_by_face(descriptor(0.1), [short, self.a])
        self.assertIs(result.visitor, self.a)

    def test_empty_pool(self):
        result = self.engine.verify_by_face(descriptor(), [])
        self.assertFalse(result.accepted)
        self.assertEqual(result.outcome, OUTCOME_NO_CANDIDATES)
        self.assertEqual(result.message, "No registered visitors with face data")

    def test_empty_probe(self):
        result = self.engine.verify_by_face([], [self.a])
        self.assertEqual(result.outcome, OUTCOME_INPUT_MISSING)

    def test_deterministic(self):
        pool = [self.c, self.b, self.a]
        first = self.engine.verify_by_face(descriptor(0.1), pool)
        second = self.engine.verify_by_face(descriptor(0.1), pool)
        self.assertEqual(first, second)

    def test_custom_threshold(self):
        strict = VerificationEngine(face_threshold=0.2)
        result = strict.verify_by_face(descriptor(0.3), [self.a])
        self.assertFalse(result.accepted)


class TestFingerprintMatching(unittest.TestCase):
    def setUp(self):
        self.engine = VerificationEngine(face_threshold=0.6, fingerprint_threshold=0.7)

    def test_three_of_four_positions(self):
        candidate = VisitorRecord(id="f", fingerprint_template=[1, 0, 0, 1])
        result = self.engine.verify_by_fingerprint([1, 0, 1, 1], None, [candidate])
        self.assertTrue(result.accepted)
        self.assertEqual(result.confidence, 0.75)
        self.assertEqual(result.method, METHOD_FINGERPRINT)

    def test_threshold_boundary_accepted(self):
        candidate = VisitorRecord(id="f", fingerprint_template=[1] * 7 + [0] * 3)
        result = self.engine.verify_by_fingerprint([1] * 10, "", [candidate])
        self.assertTrue(result.accepted)
        self.assertEqual(result.confidence, 0.7)

    def test_just_below_threshold_rejected(self):
        candidate = VisitorRecord(id="f", fingerprint_template=[1] * 69999 + [0] * 30001)
        result = self.engine.verify_by_fingerprint([1] * 100000, "", [candidate])
        self.assertFalse(result.accepted)
        self.assertEqual(result.outcome, OUTCOME_BELOW_THRESHOLD)
        self.assertEqual(result.message, "Thumbprint not recognized")

    def test_highest_score_wins(self):
        weak = VisitorRecord(id="weak", fingerprint_template=[1, 1, 1, 0, 0, 0, 0, 1, 1, 1])
        strong = VisitorRecord(id="strong", fingerprint_template=[1, 1, 1, 1, 1, 1, 1, 1, 1, 0])
        result = self.engine.verify_by_fingerprint([1] * 10, "", [weak, strong])
        self.assertIs(result.visitor, strong)
        self.assertEqual(result.confidence, 0.9)

    def test_tie_goes_to_first_candidate(self):
        first = VisitorRecord(id="first", fingerprint_template=[1, 0, 1, 1])
        second = VisitorRecord(id="second", fingerprint_template=[1, 0, 1, 1])
        result = self.engine.verify_by_fingerprint([1, 0, 1, 1], "", [first, second])
        self.assertIs(result.visitor, first)

    def test_image_equality(self):
        candidate = VisitorRecord(id="img", fingerprint_image="aGVsbG8=")
        result = self.engine.verify_by_fingerprint([], "aGVsbG8=", [candidate])
        self.assertTrue(result.accepted)
        self.assertEqual(result.confidence, 1.0)

    def test_image_difference_rejected(self):
        candidate = VisitorRecord(id="img", fingerprint_image="aGVsbG8=")
        result = self.engine.verify_by_fingerprint([], "aGVsbG9=", [candidate])
        self.assertFalse(result.accepted)

    def test_template_comparison_takes_precedence_over_image(self):
        candidate = VisitorRecord(id="both", fingerprint_template=[0, 0, 0, 0], fingerprint_image="img")
        result = self.engine.verify_by_fingerprint([1, 1, 1, 1], "img", [candidate])
        self.assertFalse(result.accepted)

    def test_string_template_values(self):
        candidate = VisitorRecord(id="s", fingerprint_template=["a", "b", "c", "d"])
        result = self.engine.verify_by_fingerprint(["a", "b", "c", "x"], "", [candidate])
        self.assertTrue(result.accepted)
        self.assertEqual(result.confidence, 0.75)

    def test_boolean_template_does_not_match_numeric_template(self):
        candidate = VisitorRecord(id="n", fingerprint_template=[1, 0, 1, 1])
        result = self.engine.verify_by_fingerprint([True, False, True, True], "", [candidate])
        self.assertFalse(result.accepted)
        self.assertEqual(result.outcome, OUTCOME_BELOW_THRESHOLD)

    def test_empty_pool(self):
        result = self.engine.verify_by_fingerprint([1, 0], "", [])
        self.assertEqual(result.outcome, OUTCOME_NO_CANDIDATES)
        self.assertEqual(result.message, "No registered visitors with thumbprint data")

    def test_missing_input(self):
        candidate = VisitorRecord(id="f", fingerprint_template=[1, 0])
        result = self.engine.verify_by_fingerprint(None, None, [candidate])
        self.assertEqual(result.outcome, OUTCOME_INPUT_MISSING)


class TestQrAndDispatch(unittest.TestCase):
    def setUp(self):
        self.engine = VerificationEngine()
        self.a = VisitorRecord(id="a", qr_token="tok-a", face_descriptor=descriptor())
        self.b = VisitorRecord(id="b", qr_token="tok-b", fingerprint_template=[1, 0, 1, 1])
        self.c = VisitorRecord(id="c")
        self.pool = [self.a, self.b, self.c]

    def test_verify_by_qr(self):
        self.assertIs(self.engine.verify_by_qr("tok-b", self.pool), self.b)
        self.assertIsNone(self.engine.verify_by_qr("abc123", self.pool))
        self.assertIsNone(self.engine.verify_by_qr("", self.pool))

    def test_unknown_qr_reports_not_found(self):
        result = self.engine.verify(QrProbe("abc123"), self.pool)
        self.assertFalse(result.accepted)
        self.assertEqual(result.outcome, OUTCOME_NOT_FOUND)
        self.assertEqual(result.message, "Visitor not found")

    def test_qr_match_is_certain(self):
        result = self.engine.verify(QrProbe("tok-a"), self.pool)
        self.assertTrue(result.accepted)
        self.assertEqual(result.method, METHOD_QR)
        self.assertEqual(result.confidence, 1.0)

    def test_face_pool_is_filtered(self):
        result = self.engine.verify(FaceProbe(descriptor()), self.pool)
        self.assertIs(result.visitor, self.a)

    def test_face_without_registered_faces(self):
        result = self.engine.verify(FaceProbe(descriptor()), [self.b, self.c])
        self.assertEqual(result.outcome, OUTCOME_NO_CANDIDATES)
        self.assertTrue(result.message.startswith("No registered visitors"))

    def test_fingerprint_dispatch(self):
        result = self.engine.verify(FingerprintProbe([1, 0, 1, 1]), self.pool)
        self.assertIs(result.visitor, self.b)

    def test_no_probe(self):
        result = self.engine.verify(None, self.pool)
        self.assertEqual(result.outcome, OUTCOME_INPUT_MISSING)

    def test_idempotent(self):
        probe = probe_from_request(face_descriptor=descriptor(0.2))
        self.assertEqual(self.engine.verify(probe, self.pool), self.engine.verify(probe, self.pool))

    def test_unsupported_probe_type(self):
        with self.assertRaises(TypeError):
            self.engine.verify("tok-a", self.pool)

    def test_invalid_thresholds(self):
        with self.assertRaises(ValueError):
            VerificationEngine(face_threshold=0)
        with self.assertRaises(ValueError):
            VerificationEngine(fingerprint_threshold=1.5)


class TestProbeFromRequest(unittest.TestCase):
    def test_qr_takes_precedence(self):
        probe = probe_from_request(qr_code="tok", face_descriptor=[0.1], thumbprint="img")
        self.assertEqual(probe, QrProbe("tok"))

    def test_face_before_fingerprint(self):
        probe = probe_from_request(face_descriptor=[0.1], thumbprint_template=[1])
        self.assertEqual(probe, FaceProbe([0.1]))

    def test_fingerprint_from_image_only(self):
        probe = probe_from_request(thumbprint="img")
        self.assertEqual(probe, FingerprintProbe([], "img"))

    def test_method_hint_overrides_precedence(self):
        probe = probe_from_request(qr_code="tok", face_descriptor=[0.1], method="face")
        self.assertEqual(probe, FaceProbe([0.1]))
        probe = probe_from_request(qr_code="tok", thumbprint_template=[1, 0], method="thumbprint")
        self.assertEqual(probe, FingerprintProbe([1, 0], ""))

    def test_hint_with_missing_field_reports_missing_input(self):
        probe = probe_from_request(qr_code="tok", method="face")
        result = VerificationEngine().verify(probe, [])
        self.assertEqual(result.outcome, OUTCOME_INPUT_MISSING)

    def test_nothing_supplied(self):
        self.assertIsNone(probe_from_request())
        self.assertIsNone(probe_from_request(qr_code="", face_descriptor=[], thumbprint_template=[]))


if __name__ == "__main__":
    unittest.main()
