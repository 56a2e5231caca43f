from unittest import TestCase

from json_chat.app.process_upload import (
    INVALID_JSON_MESSAGE,
    NO_FILE_MESSAGE,
    UploadError,
    process_upload,
)


class ProcessUploadTests(TestCase):
    def assertUploadError(self, raw, kind, message):
        with self.assertRaises(UploadError) as ctx:
            process_upload(raw)
        self.assertEqual(ctx.exception.kind, kind)
        self.assertEqual(ctx.exception.message, message)

    def test_text_is_kept_byte_exact(self):
        raw = '{\n  "name": "Zoë",\n  "n": 1.50\n}\n'.encode("utf-8")

        document = process_upload(raw)

        self.assertEqual(document.text.encode("utf-8"), raw)
        self.assertEqual(document.value, {"name": "Zoë", "n": 1.5})

    def test_byte_order_mark_is_accepted(self):
        document = process_upload(b'\xef\xbb\xbf{"a": 1}')

        self.assertEqual(document.text, '{"a": 1}')
        self.assertEqual(document.value, {"a": 1})
        self.assertEqual(process_upload("\ufeff[1]").text, "[1]")

    def test_str_input(self):
        document = process_upload("[1, 2, 3]")

        self.assertEqual(document.value, [1, 2, 3])

    def test_scalar_documents_are_accepted(self):
        self.assertEqual(process_upload(b"null").value, None)
        self.assertEqual(process_upload(b'"hi"').value, "hi")

    def test_missing_file(self):
        self.assertUploadError(None, "no_file", NO_FILE_MESSAGE)
        self.assertUploadError(b"", "no_file", NO_FILE_MESSAGE)

    def test_invalid_json(self):
        self.assertUploadError(b"{not json", "invalid_json", INVALID_JSON_MESSAGE)
        self.assertUploadError(b"   ", "invalid_json", INVALID_JSON_MESSAGE)

    def test_non_utf8_content(self):
        self.assertUploadError(b'{"a": "\xff"}', "invalid_json", INVALID_JSON_MESSAGE)

    def test_non_standard_constants_are_rejected(self):
        self.assertUploadError(b'{"a": NaN}', "invalid_json", INVALID_JSON_MESSAGE)
        self.assertUploadError(b"[Infinity]", "invalid_json", INVALID_JSON_MESSAGE)

    def test_digest_depends_on_exact_text(self):
        self.assertNotEqual(process_upload(b"[1]").digest, process_upload(b"[ 1 ]").digest)
