"""Tests for ENML conversion."""

import pytest

from evernote_mcp.core.enml import decode_entities, enml_to_html, enml_to_plain_text

PROLOG = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<!DOCTYPE en-note SYSTEM "http://xml.evernote.com/pub/enml2.dtd">'
)


class TestPlainText:
    """enml_to_plain_text"""

    def test_prolog_and_note_wrapper_removed(self):
        assert enml_to_plain_text(PROLOG + "<en-note>Hi</en-note>") == "Hi"

    def test_checklist(self):
        enml = (
            '<en-note><div><en-todo checked="true"/>Buy milk</div>'
            '<div><en-todo checked="false"/>Call mom</div></en-note>'
        )

        assert enml_to_plain_text(enml) == "☑ Buy milk\n☐ Call mom"

    def test_checked_item_in_paragraph(self):
        enml = '<en-note><p><en-todo checked="true"/>Buy milk</p></en-note>'

        assert enml_to_plain_text(enml) == "☑ Buy milk"

    def test_checked_attribute_in_any_position(self):
        enml = '<en-note><en-todo id="t1" checked="true"></en-todo>Done</en-note>'

        assert enml_to_plain_text(enml) == "☑ Done"

    def test_media(self):
        enml = (
            '<en-note><p>Photo: <en-media type="image/png" hash="abc" alt="Sunset"/></p>'
            '<en-media type="application/pdf" hash="def"/></en-note>'
        )

        assert enml_to_plain_text(enml) == "Photo: Sunset\n\n[Media]"

    def test_encrypted_section_spanning_lines(self):
        enml = '<en-note>Secret: <en-crypt hint="h" cipher="AES">abc\ndef</en-crypt></en-note>'

        assert enml_to_plain_text(enml) == "Secret: [Encrypted Content]"

    def test_list(self):
        enml = "<en-note><ul><li>One</li><li>Two</li></ul></en-note>"

        assert enml_to_plain_text(enml) == "• One\n• Two"

    def test_table(self):
        enml = (
            "<en-note><table><tr><td>a</td><td>b</td></tr>"
            "<tr><td>c</td><td>d</td></tr></table></en-note>"
        )

        assert enml_to_plain_text(enml) == "a b \nc d"

    def test_entities(self):
        enml = (
            "<en-note>Fish &amp; Chips &lt;3 &quot;yum&quot; "
            "it&#39;s &apos;ok&apos;&nbsp;!</en-note>"
        )

        assert enml_to_plain_text(enml) == "Fish & Chips <3 \"yum\" it's 'ok' !"

    def test_blank_lines_collapsed(self):
        enml = "<en-note><h1>Title</h1><p>Body</p><br/><br/><div>End</div></en-note>"

        assert enml_to_plain_text(enml) == "Title\n\nBody\n\nEnd"

    def test_unknown_tags_stripped(self):
        enml = '<en-note><span style="color:red"><b>Bold</b></span> text</en-note>'

        assert enml_to_plain_text(enml) == "Bold text"

    @pytest.mark.parametrize("enml", ["", None])
    def test_empty(self, enml):
        assert enml_to_plain_text(enml) == ""


class TestHtml:
    """enml_to_html"""

    def test_note_wrapper(self):
        html = enml_to_html(PROLOG + "<en-note><p>Hi</p></en-note>")

        assert html == '<div class="note-content"><p>Hi</p></div>'

    def test_image_without_alt(self):
        html = enml_to_html('<en-media type="image/jpeg" hash="abc123"/>')

        assert html == (
            '<img type="image/jpeg" hash="abc123" alt="Evernote Image" '
            'style="max-width: 100%;">'
        )

    def test_image_keeps_alt(self):
        html = enml_to_html(
            '<en-media type="image/png" hash="h" alt="Sunset"></en-media>'
        )

        assert html == '<img type="image/png" hash="h" alt="Sunset" style="max-width: 100%;">'

    def test_image_attributes_escaped(self):
        html = enml_to_html(
            "<en-note><en-media type=\"image/png\" hash=\"h\" alt='say \"hi\"'/>"
            "<p>&quot;quoted&quot;</p></en-note>"
        )

        assert html == (
            '<div class="note-content">'
            '<img type="image/png" hash="h" alt="say &quot;hi&quot;" '
            'style="max-width: 100%;">'
            '<p>"quoted"</p></div>'
        )

    def test_entity_in_attribute_not_double_escaped(self):
        html = enml_to_html('<en-media type="image/png" hash="h" alt="Tom &amp; Jerry"/>')

        assert 'alt="Tom &amp; Jerry"' in html

    def test_other_media_placeholder(self):
        html = enml_to_html('<en-media type="application/pdf" hash="def"/>')

        assert html == '<div class="media-placeholder">[Media Attachment]</div>'

    def test_checkboxes(self):
        html = enml_to_html('<en-todo checked="true"/>Done<br/><en-todo/>Open')

        assert html == (
            '<input type="checkbox" checked disabled> Done<br/>'
            '<input type="checkbox" disabled> Open'
        )

    def test_encrypted_section(self):
        html = enml_to_html("<en-crypt>xyz</en-crypt>")

        assert html == '<div class="encrypted-content">[Encrypted Content]</div>'

    @pytest.mark.parametrize("enml", ["", None])
    def test_empty(self, enml):
        assert enml_to_html(enml) == ""


class TestEntities:
    def test_ampersand_decoded_last(self):
        assert decode_entities("&amp;lt;") == "&lt;"

    def test_plain_text_untouched(self):
        assert decode_entities("a < b & c") == "a < b & c"
