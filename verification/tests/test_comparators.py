# verification/tests/test_comparators.py
import asyncio
from unittest import mock

import aiohttp
import numpy as np
from django.test import SimpleTestCase

from verification.services.comparators import (
    CloudFaceComparator, DescriptorComparator, RemoteFingerprintComparator, distance_to_confidence,
)
from verification.services.descriptor_extractor import Extraction
from verification.services.errors import ProbeInvalid, RemoteServiceError
from verification.services.image_io import clean_base64, decode_base64, decode_image
from verification.services.models import Modality, ProbeKind, ProbeSample

from .factories import face_template, fake_client_session, finger_template, flat_png_b64, noise_png_b64


class ImageIoTest(SimpleTestCase):
    def test_clean_base64_strips_prefix_whitespace_and_pads(self):
        self.assertEqual(clean_base64("data:image/jpeg;base64,YW Jj\nZA"), "YWJjZA==")
        self.assertEqual(clean_base64("-_8"), "+/8=")

    def test_decode_base64_rejects_garbage(self):
        with self.assertRaises(ValueError):
            decode_base64("***")

    def test_decode_image(self):
        img = decode_image(noise_png_b64(5, size=(32, 24), data_uri=True))
        self.assertEqual(img.shape, (24, 32, 3))
        with self.assertRaises(ProbeInvalid):
            decode_image("aGVsbG8=")
        with self.assertRaises(ProbeInvalid):
            decode_image("")


class DescriptorComparatorTest(SimpleTestCase):
    def test_confidence_from_distance(self):
        self.assertAlmostEqual(distance_to_confidence(0.3), 70.0)
        self.assertEqual(distance_to_confidence(1.7), 0.0)

    async def test_compare(self):
        comparator = DescriptorComparator(threshold=0.5, dim=3)
        probe = await comparator.prepare_probe(ProbeSample(Modality.FACE, [0.0, 0.0, 0.0], ProbeKind.DESCRIPTOR))
        near = await comparator.compare(probe, face_template("a", [0.0, 0.4, 0.0]))
        far = await comparator.compare(probe, face_template("b", [0.0, 0.0, 0.6]))
        self.assertTrue(near.matched)
        self.assertAlmostEqual(near.distance, 0.4, places=6)
        self.assertFalse(far.matched)
        self.assertGreater(near.score, far.score)

    async def test_non_finite_template_is_an_error_result(self):
        comparator = DescriptorComparator(dim=2)
        probe = await comparator.prepare_probe(ProbeSample(Modality.FACE, [0.0, 0.0], ProbeKind.DESCRIPTOR))
        result = await comparator.compare(probe, face_template("a", [float("nan"), 0.0]))
        self.assertFalse(result.ok)
        self.assertIn("non-finite", result.error)

    async def test_image_probe_goes_through_extractor(self):
        extractor = mock.Mock()
        extractor.extract.return_value = Extraction(descriptor=[0.5, 0.5], det_score=0.91, bbox=(0, 0, 10, 10))
        comparator = DescriptorComparator(extractor, dim=2)
        probe = await comparator.prepare_probe(ProbeSample(Modality.FACE, noise_png_b64(1)))
        self.assertEqual(probe.kind, ProbeKind.DESCRIPTOR)
        self.assertEqual(probe.payload, [0.5, 0.5])
        self.assertEqual(probe.key, np.asarray([0.5, 0.5], dtype=np.float32).tobytes())

    async def test_image_probe_without_face(self):
        extractor = mock.Mock()
        extractor.extract.side_effect = ProbeInvalid("No face detected in image")
        comparator = DescriptorComparator(extractor, dim=2)
        with self.assertRaisesMessage(ProbeInvalid, "No face detected"):
            await comparator.prepare_probe(ProbeSample(Modality.FACE, noise_png_b64(1)))


class CloudFaceComparatorTest(SimpleTestCase):
    def setUp(self):
        self.comparator = CloudFaceComparator("https://facepp.local/compare", "k", "s", threshold=70.0)

    async def _compare(self, response, stored="https://cdn.local/ada.jpg"):
        probe = await self.comparator.prepare_probe(ProbeSample(Modality.FACE, noise_png_b64(1, data_uri=True)))
        with mock.patch.object(self.comparator, "_request", new=mock.AsyncMock(**response)) as request:
            result = await self.comparator.compare(probe, face_template("a", stored))
        return result, request

    async def test_confidence_above_threshold(self):
        result, request = await self._compare({"return_value": {"confidence": 82.5}})
        self.assertTrue(result.matched)
        self.assertEqual(result.confidence, 82.5)
        form = request.call_args.kwargs["data"]
        self.assertEqual(form["image_url1"], "https://cdn.local/ada.jpg")
        self.assertEqual(form["image_base64_2"], noise_png_b64(1))
        self.assertNotIn("image_base64_1", form)

    async def test_confidence_below_threshold(self):
        result, _ = await self._compare({"return_value": {"confidence": 41.0}})
        self.assertTrue(result.ok)
        self.assertFalse(result.matched)

    async def test_api_error_message(self):
        result, _ = await self._compare({"return_value": {"error_message": "CONCURRENCY_LIMIT_EXCEEDED"}})
        self.assertEqual(result.error, "remote error: CONCURRENCY_LIMIT_EXCEEDED")

    async def test_stored_photo_without_face(self):
        result, _ = await self._compare({"return_value": {"faces1": []}}, stored=noise_png_b64(2))
        self.assertEqual(result.error, "no face found in stored image")

    async def test_http_and_transport_failures(self):
        result, _ = await self._compare({"side_effect": RemoteServiceError("Bad Gateway", status=502)})
        self.assertEqual(result.error, "remote error 502: Bad Gateway")
        result, _ = await self._compare({"side_effect": aiohttp.ClientConnectionError("refused")})
        self.assertTrue(result.error.startswith("transport error"))
        result, _ = await self._compare({"side_effect": asyncio.TimeoutError()})
        self.assertEqual(result.error, "timeout")

    async def test_same_photo_is_exact_match_without_call(self):
        stored = noise_png_b64(1)
        result, request = await self._compare({"return_value": {"confidence": 1.0}}, stored=stored)
        request.assert_not_awaited()
        self.assertEqual(result.method, "exact_match")
        self.assertEqual(result.confidence, 100.0)


class RemoteFingerprintComparatorTest(SimpleTestCase):
    def setUp(self):
        self.comparator = RemoteFingerprintComparator("http://nbis.local/")

    async def test_blank_probe_is_rejected(self):
        with self.assertRaisesMessage(ProbeInvalid, "Fingerprint image is blank"):
            await self.comparator.prepare_probe(ProbeSample(Modality.FINGERPRINT, flat_png_b64()))

    async def test_descriptor_probe_is_rejected(self):
        with self.assertRaises(ProbeInvalid):
            await self.comparator.prepare_probe(ProbeSample(Modality.FINGERPRINT, [1.0], ProbeKind.DESCRIPTOR))

    async def test_compare_payload(self):
        probe = await self.comparator.prepare_probe(ProbeSample(Modality.FINGERPRINT, noise_png_b64(1)))
        response = {"success": True, "matched": True, "score": 55, "confidence": 77.0, "threshold": 40}
        with mock.patch.object(self.comparator, "_request", new=mock.AsyncMock(return_value=response)) as request:
            result = await self.comparator.compare(probe, finger_template("s", noise_png_b64(2)))
        self.assertTrue(result.matched)
        self.assertEqual(result.score, 55.0)
        self.assertEqual(result.method, "NIST_NBIS")
        method, url, timeout = request.call_args.args
        self.assertEqual((method, url, timeout), ("POST", "http://nbis.local/compare", 30.0))
        self.assertFalse(request.call_args.kwargs["json"]["is_duplicate_check"])

    async def test_unsuccessful_response_is_an_error_result(self):
        probe = await self.comparator.prepare_probe(ProbeSample(Modality.FINGERPRINT, noise_png_b64(1)))
        response = {"success": False, "error": "mindtct failed"}
        with mock.patch.object(self.comparator, "_request", new=mock.AsyncMock(return_value=response)):
            result = await self.comparator.compare(probe, finger_template("s", noise_png_b64(2)))
        self.assertEqual(result.error, "mindtct failed")

    async def test_identical_image_scores_999(self):
        probe = await self.comparator.prepare_probe(ProbeSample(Modality.FINGERPRINT, noise_png_b64(3)))
        with mock.patch.object(self.comparator, "_request", new=mock.AsyncMock()) as request:
            result = await self.comparator.compare(probe, finger_template("s", noise_png_b64(3, data_uri=True)))
        request.assert_not_awaited()
        self.assertEqual((result.score, result.confidence), (999.0, 100.0))

    async def test_batch_request_body(self):
        probe = await self.comparator.prepare_probe(ProbeSample(Modality.FINGERPRINT, noise_png_b64(1)))
        templates = [finger_template("s1", noise_png_b64(2), "Index", "file-9")]
        with mock.patch.object(self.comparator, "_request", new=mock.AsyncMock(return_value={})) as request:
            await self.comparator.batch_compare(probe, templates)
        body = request.call_args.kwargs["json"]
        self.assertEqual(body["database"], [
            {"id": "file-9", "studentId": "s1", "fingerName": "Index", "image": noise_png_b64(2)},
        ])
        self.assertEqual(request.call_args.args[2], 120.0)

    async def test_health(self):
        with mock.patch.object(self.comparator, "_request", new=mock.AsyncMock(return_value={"status": "ok"})):
            self.assertEqual(await self.comparator.health(), {"ready": True, "status": "ok"})
        with mock.patch.object(self.comparator, "_request", new=mock.AsyncMock(side_effect=asyncio.TimeoutError())):
            self.assertEqual(await self.comparator.health(), {"ready": False, "error": "TimeoutError"})

    def test_duplicate_check_copy(self):
        dup = self.comparator.for_duplicate_check()
        self.assertTrue(dup.duplicate_check)
        self.assertFalse(self.comparator.duplicate_check)
        self.assertEqual(dup.base_url, "http://nbis.local")

    async def test_non_object_reply_is_an_error_result(self):
        probe = await self.comparator.prepare_probe(ProbeSample(Modality.FINGERPRINT, noise_png_b64(1)))
        for reply in (None, ["matched"], 87):
            with mock.patch("aiohttp.ClientSession", new=fake_client_session(lambda url, body: reply)):
                result = await self.comparator.compare(probe, finger_template("s", noise_png_b64(2)))
            self.assertFalse(result.ok)
            self.assertEqual(result.error, "remote error 200: unexpected response shape")

    async def test_non_object_reply_is_raised_from_request(self):
        with mock.patch("aiohttp.ClientSession", new=fake_client_session(lambda url, body: None)):
            with self.assertRaisesMessage(RemoteServiceError, "unexpected response shape"):
                await self.comparator._request("GET", "http://nbis.local/health", 1.0)
        with mock.patch("aiohttp.ClientSession", new=fake_client_session(lambda url, body: {"status": "ok"})):
            self.assertEqual(await self.comparator.health(), {"ready": True, "status": "ok"})

    async def test_url_template_is_sent_unchanged(self):
        stored = "https://cdn.local/prints/s1-index.png"
        probe = await self.comparator.prepare_probe(ProbeSample(Modality.FINGERPRINT, noise_png_b64(1)))
        response = {"success": True, "matched": False, "score": 3, "confidence": 1.0}
        with mock.patch.object(self.comparator, "_request", new=mock.AsyncMock(return_value=response)) as request:
            result = await self.comparator.compare(probe, finger_template("s1", stored, "Index"))
            await self.comparator.batch_compare(probe, [finger_template("s1", stored, "Index", "file-1")])
        self.assertTrue(result.ok)
        compare_body, batch_body = (c.kwargs["json"] for c in request.call_args_list)
        self.assertEqual(compare_body["image2"], stored)
        self.assertEqual(batch_body["database"][0]["image"], stored)
