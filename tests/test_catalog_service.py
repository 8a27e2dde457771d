from shopchat.services.catalog_service import (
    PRICE_MISSING_TEXT,
    Catalog,
    derive_group,
    normalize_name,
    tokenize,
)


class TestNormalization:
    def test_normalize_name_drops_spaces_and_punctuation(self):
        assert normalize_name(" ฉาก 2x2 หนา 1.2 มิล ") == "ฉาก2x2หนา12มิล"

    def test_normalize_name_folds_width(self):
        assert normalize_name("ＡＢＣ") == "abc"

    def test_tokenize_keeps_codes(self):
        assert tokenize("ไม้ฝา #1") == ["ไม้ฝา", "#1"]

    def test_derive_group_uses_first_word(self):
        assert derive_group("ฉาก 2x2 หนา 1.2 มิล") == "ฉาก"
        assert derive_group("C125 ตัวซี") == "C"
        assert derive_group("") == ""


class TestFromRows:
    def test_reads_named_columns(self, catalog):
        assert len(catalog) == 5
        product = catalog.products[0]
        assert product.name == "ฉาก 2x2 หนา 1.2 มิล"
        assert product.price == 135.0
        assert product.unit == "เส้น"
        assert product.group == "ฉาก"

    def test_missing_price_shows_phone(self, catalog):
        product = catalog.products[2]
        assert product.price is None
        assert product.price_text() == PRICE_MISSING_TEXT

    def test_group_derived_without_column(self):
        catalog = Catalog.from_rows([["สินค้า", "ราคา", "หน่วย"], ["แป๊บ 1 นิ้ว", "1,200", "เส้น"]])
        product = catalog.products[0]
        assert product.group == "แป๊บ"
        assert product.price == 1200.0

    def test_skips_rows_without_name(self):
        catalog = Catalog.from_rows([["name", "price"], ["", "10"], ["ลวด", "20"]])
        assert [p.name for p in catalog.products] == ["ลวด"]

    def test_empty_rows(self):
        assert len(Catalog.from_rows([])) == 0

    def test_load_reads_bom_csv(self, tmp_path):
        path = tmp_path / "products.csv"
        path.write_text("name,price,unit\nลวดผูก,45,ม้วน\n", encoding="utf-8-sig")
        catalog = Catalog.load(path)
        assert catalog.products[0].name == "ลวดผูก"
        assert catalog.products[0].unit == "ม้วน"


class TestListing:
    def test_list_by_term_sorted(self, catalog):
        names = [p.name for p in catalog.list_by_term("ฉาก")]
        assert names == ["ฉาก 1.5x1.5 หนา 1 มิล", "ฉาก 2x2 หนา 1.2 มิล", "ฉากริมสังกะสี 3 เมตร"]

    def test_list_by_term_ignores_blank_term(self, catalog):
        assert catalog.list_by_term(" ") == []
        assert [p.name for p in catalog.list_by_term("ไม้ฝา")] == ["ไม้ฝา ตราช้าง #1"]

    def test_format_line(self, catalog):
        line = catalog.products[0].format_line()
        assert line == "• ฉาก 2x2 หนา 1.2 มิล ราคา 135 บาท ต่อ เส้น"


class TestResolveGroup:
    def test_longest_group_wins(self, catalog):
        assert catalog.resolve_group("ฉากริมสังกะสี ขนาดเท่าไหร่") == "ฉากริมสังกะสี"

    def test_short_group(self, catalog):
        assert catalog.resolve_group("ฉาก 2x2 ค่ะ") == "ฉาก"

    def test_no_group(self, catalog):
        assert catalog.resolve_group("ส่งของกี่วัน") is None
        assert catalog.resolve_group("") is None

    def test_render_lists_every_product(self, catalog):
        rendered = catalog.render().splitlines()
        assert len(rendered) == 5
        assert rendered[0] == "ฉาก 2x2 หนา 1.2 มิล = 135 บาท ต่อ เส้น"
