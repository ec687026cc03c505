"""
Catalog tests: browsing, cart stub, product and category administration,
translations and the contact form.
"""
import pytest

import server


class TestBrowsing:

    @pytest.mark.asyncio
    async def test_listing_requires_login(self, client, seeded):
        assert (await client.get("/api/products")).status_code == 401
        assert (await client.get("/api/categories")).status_code == 401

    @pytest.mark.asyncio
    async def test_only_active_products_listed(self, client, db, shopper_headers, products):
        await db.products.update_one({"id": products["iPad Air"]["id"]}, {"$set": {"is_active": False}})
        response = await client.get("/api/products", headers=shopper_headers)
        names = {p["name"] for p in response.json()}
        assert names == {"Dell XPS 13", "Samsung Galaxy S24", "Wireless Earbuds"}

    @pytest.mark.asyncio
    async def test_search_is_case_insensitive(self, client, shopper_headers, seeded):
        response = await client.get("/api/products", params={"search": "CAMERA"}, headers=shopper_headers)
        assert [p["name"] for p in response.json()] == ["Samsung Galaxy S24"]

    @pytest.mark.asyncio
    async def test_search_treats_input_literally(self, client, shopper_headers, seeded):
        response = await client.get("/api/products", params={"search": "(.*"}, headers=shopper_headers)
        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_filter_by_category(self, client, shopper_headers, categories):
        response = await client.get(
            "/api/products", params={"category_id": categories["Laptops"]["id"]}, headers=shopper_headers
        )
        body = response.json()
        assert [p["name"] for p in body] == ["Dell XPS 13"]
        assert body[0]["category_name"] == "Laptops"

    @pytest.mark.asyncio
    async def test_home_shows_three_products(self, client, seeded):
        response = await client.get("/api/home")
        assert response.status_code == 200
        assert len(response.json()) == 3

    @pytest.mark.asyncio
    async def test_product_detail_with_translation(self, client, products):
        earbuds = products["Wireless Earbuds"]
        await server.set_translation("Product", "Name", earbuds["id"], 3, "سماعات لاسلكية")

        english = await client.get(f"/api/products/{earbuds['id']}")
        assert english.status_code == 200
        assert english.json()["translated_name"] == "Wireless Earbuds"
        assert english.json()["category_name"] == "Accessories"

        arabic = await client.get(f"/api/products/{earbuds['id']}", params={"language_id": 3})
        assert arabic.json()["translated_name"] == "سماعات لاسلكية"
        assert arabic.json()["translated_description"] == ""

    @pytest.mark.asyncio
    async def test_related_products_share_category(self, client, db, products, categories):
        laptop_id = categories["Laptops"]["id"]
        for i in range(5):
            await db.products.insert_one({
                "id": f"laptop-{i}", "name": f"Laptop {i}", "description": "Another laptop",
                "price": 999.0, "stock_quantity": 3, "image_url": server.DEFAULT_PRODUCT_IMAGE,
                "is_active": i != 0, "category_id": laptop_id, "created_at": server.now_iso()
            })

        xps = products["Dell XPS 13"]
        related = (await client.get(f"/api/products/{xps['id']}")).json()["related_products"]
        assert len(related) == 4
        assert all(p["category_id"] == laptop_id for p in related)
        assert xps["id"] not in {p["id"] for p in related}
        assert "laptop-0" not in {p["id"] for p in related}

    @pytest.mark.asyncio
    async def test_inactive_product_detail_is_404(self, client, db, products):
        ipad = products["iPad Air"]
        await db.products.update_one({"id": ipad["id"]}, {"$set": {"is_active": False}})
        assert (await client.get(f"/api/products/{ipad['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_inactive_product_preview_depends_on_caller(self, client, db, products, shopper_headers, manager_headers):
        ipad = products["iPad Air"]
        await db.products.update_one({"id": ipad["id"]}, {"$set": {"is_active": False}})
        url = f"/api/products/{ipad['id']}"

        assert (await client.get(url, headers=shopper_headers)).status_code == 404
        assert (await client.get(url, headers={"Authorization": "Bearer junk"})).status_code == 404

        preview = await client.get(url, headers=manager_headers)
        assert preview.status_code == 200
        assert preview.json()["is_active"] is False

    @pytest.mark.asyncio
    async def test_detail_is_public_with_or_without_token(self, client, products, shopper_headers):
        url = f"/api/products/{products['iPad Air']['id']}"
        assert (await client.get(url)).status_code == 200
        assert (await client.get(url, headers=shopper_headers)).status_code == 200
        assert (await client.get(url, headers={"Authorization": "Bearer junk"})).status_code == 200

    @pytest.mark.asyncio
    async def test_categories_need_an_active_product(self, client, db, shopper_headers, products):
        await db.products.update_one({"id": products["iPad Air"]["id"]}, {"$set": {"is_active": False}})
        response = await client.get("/api/categories", headers=shopper_headers)
        assert [c["name"] for c in response.json()] == ["Accessories", "Laptops", "Smartphones"]

    @pytest.mark.asyncio
    async def test_category_detail(self, client, shopper_headers, categories):
        phones = categories["Smartphones"]
        response = await client.get(f"/api/categories/{phones['id']}", headers=shopper_headers)
        assert response.status_code == 200
        assert [p["name"] for p in response.json()["products"]] == ["Samsung Galaxy S24"]
        missing = await client.get("/api/categories/nope", headers=shopper_headers)
        assert missing.status_code == 404


class TestCartStub:

    @pytest.mark.asyncio
    async def test_add_to_cart(self, client, shopper_headers, products):
        ipad = products["iPad Air"]
        response = await client.post(f"/api/products/{ipad['id']}/cart", json={"quantity": 2}, headers=shopper_headers)
        assert response.status_code == 200
        assert response.json()["message"] == "Product added to cart successfully!"

    @pytest.mark.asyncio
    async def test_quantity_rules(self, client, shopper_headers, products):
        ipad = products["iPad Air"]
        zero = await client.post(f"/api/products/{ipad['id']}/cart", json={"quantity": 0}, headers=shopper_headers)
        assert zero.status_code == 400
        too_many = await client.post(f"/api/products/{ipad['id']}/cart", json={"quantity": 9}, headers=shopper_headers)
        assert too_many.json()["detail"] == "Not enough stock available"

    @pytest.mark.asyncio
    async def test_requires_login(self, client, products):
        response = await client.post(f"/api/products/{products['iPad Air']['id']}/cart", json={})
        assert response.status_code == 401


class TestProductAdmin:

    def payload(self, category_id, **overrides):
        data = {
            "name": "Pixel 9",
            "description": "Clean Android phone",
            "price": 799.0,
            "stock_quantity": 12,
            "category_id": category_id,
        }
        data.update(overrides)
        return data

    @pytest.mark.asyncio
    async def test_manager_creates_product(self, client, manager_headers, categories):
        response = await client.post(
            "/api/admin/products", json=self.payload(categories["Smartphones"]["id"]), headers=manager_headers
        )
        assert response.status_code == 200
        body = response.json()
        assert body["image_url"] == server.DEFAULT_PRODUCT_IMAGE
        assert body["is_active"] is True
        assert body["category_name"] == "Smartphones"

    @pytest.mark.asyncio
    async def test_shopper_cannot_create(self, client, shopper_headers, categories):
        response = await client.post(
            "/api/admin/products", json=self.payload(categories["Smartphones"]["id"]), headers=shopper_headers
        )
        assert response.status_code == 403
        assert response.json()["detail"] == "Permission 'Products.Create' required"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides,message", [
        ({"name": " "}, "Product name is required"),
        ({"description": ""}, "Product description is required"),
        ({"price": 0}, "Price must be greater than 0"),
        ({"stock_quantity": -1}, "Stock quantity cannot be negative"),
        ({"category_id": ""}, "Please select a category"),
        ({"category_id": "missing"}, "Invalid category selected."),
    ])
    async def test_validation(self, client, manager_headers, categories, overrides, message):
        response = await client.post(
            "/api/admin/products",
            json=self.payload(**{"category_id": categories["Smartphones"]["id"], **overrides}),
            headers=manager_headers
        )
        assert response.status_code == 400
        assert response.json()["detail"] == message

    @pytest.mark.asyncio
    async def test_update_keeps_image_when_omitted(self, client, manager_headers, products, categories):
        xps = products["Dell XPS 13"]
        response = await client.put(
            f"/api/admin/products/{xps['id']}",
            json=self.payload(categories["Laptops"]["id"], name="Dell XPS 13 (2025)", price=1199.0),
            headers=manager_headers
        )
        assert response.status_code == 200
        assert response.json()["name"] == "Dell XPS 13 (2025)"
        assert response.json()["image_url"] == "/images/dell-xps.jpg"

    @pytest.mark.asyncio
    async def test_update_missing_product(self, client, manager_headers, categories):
        response = await client.put(
            "/api/admin/products/nope", json=self.payload(categories["Laptops"]["id"]), headers=manager_headers
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_admin_listing_includes_inactive(self, client, manager_headers, products):
        ipad = products["iPad Air"]
        toggled = await client.post(f"/api/admin/products/{ipad['id']}/toggle", headers=manager_headers)
        assert toggled.json()["is_active"] is False

        listing = await client.get("/api/admin/products", headers=manager_headers)
        assert len(listing.json()) == 4
        single = await client.get(f"/api/admin/products/{ipad['id']}", headers=manager_headers)
        assert single.json()["is_active"] is False

        toggled = await client.post(f"/api/admin/products/{ipad['id']}/toggle", headers=manager_headers)
        assert toggled.json()["is_active"] is True

    @pytest.mark.asyncio
    async def test_delete_needs_delete_permission(self, client, db, manager_headers, admin_headers, products):
        earbuds = products["Wireless Earbuds"]
        denied = await client.delete(f"/api/admin/products/{earbuds['id']}", headers=manager_headers)
        assert denied.status_code == 403

        removed = await client.delete(f"/api/admin/products/{earbuds['id']}", headers=admin_headers)
        assert removed.status_code == 200
        assert await db.products.find_one({"id": earbuds["id"]}) is None
        assert await db.translations.count_documents({"entity_id": earbuds["id"]}) == 0

        again = await client.delete(f"/api/admin/products/{earbuds['id']}", headers=admin_headers)
        assert again.status_code == 404


class TestImageUpload:

    @pytest.mark.asyncio
    async def test_rejects_non_images(self, client, manager_headers):
        response = await client.post(
            "/api/admin/upload-image",
            files={"file": ("notes.txt", b"hello", "text/plain")},
            headers=manager_headers
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "File must be an image"

    @pytest.mark.asyncio
    async def test_uploads_to_cloudinary(self, client, manager_headers, monkeypatch):
        calls = []

        def fake_upload(content, **kwargs):
            calls.append(kwargs)
            return {"secure_url": "https://res.cloudinary.com/demo/products/pixel.png"}

        monkeypatch.setattr(server.cloudinary.uploader, "upload", fake_upload)
        response = await client.post(
            "/api/admin/upload-image",
            files={"file": ("pixel.png", b"\x89PNG fake", "image/png")},
            headers=manager_headers
        )
        assert response.status_code == 200
        assert response.json()["url"].endswith("pixel.png")
        assert calls == [{"folder": "products", "resource_type": "image"}]

    @pytest.mark.asyncio
    async def test_upload_failure(self, client, manager_headers, monkeypatch):
        def broken_upload(content, **kwargs):
            raise RuntimeError("cloudinary down")

        monkeypatch.setattr(server.cloudinary.uploader, "upload", broken_upload)
        response = await client.post(
            "/api/admin/upload-image",
            files={"file": ("pixel.png", b"\x89PNG fake", "image/png")},
            headers=manager_headers
        )
        assert response.status_code == 500
        assert response.json()["detail"] == "Image upload failed"


class TestCategoryAdmin:

    @pytest.mark.asyncio
    async def test_admin_creates_and_renames(self, client, admin_headers):
        created = await client.post(
            "/api/admin/categories", json={"name": "Smart Home", "description": "Connected devices"}, headers=admin_headers
        )
        assert created.status_code == 200
        assert created.json()["slug"] == "smart-home"

        renamed = await client.put(
            f"/api/admin/categories/{created.json()['id']}", json={"name": "Smart Living"}, headers=admin_headers
        )
        assert renamed.json()["slug"] == "smart-living"

    @pytest.mark.asyncio
    async def test_duplicate_name(self, client, admin_headers, categories):
        response = await client.post("/api/admin/categories", json={"name": "laptops"}, headers=admin_headers)
        assert response.status_code == 400

        rename = await client.put(
            f"/api/admin/categories/{categories['Tablets']['id']}", json={"name": "Laptops"}, headers=admin_headers
        )
        assert rename.status_code == 400

    @pytest.mark.asyncio
    async def test_manager_lacks_manage_products(self, client, manager_headers):
        response = await client.post("/api/admin/categories", json={"name": "Drones"}, headers=manager_headers)
        assert response.status_code == 403


class TestTranslations:

    @pytest.mark.asyncio
    async def test_set_and_read_back(self, client, admin_headers, products):
        ipad = products["iPad Air"]
        response = await client.put("/api/admin/translations", json={
            "table_name": "Product", "column_name": "Name", "entity_id": ipad["id"],
            "language_id": 2, "value": "আইপ্যাড এয়ার"
        }, headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["message"] == "Bangla translation saved"

        values = await client.get(f"/api/translations/Product/{ipad['id']}", params={"language_id": 2})
        assert values.json() == {"Name": "আইপ্যাড এয়ার", "Description": "Versatile tablet for work and play"}

    @pytest.mark.asyncio
    async def test_unknown_language_rejected(self, client, admin_headers, products):
        response = await client.put("/api/admin/translations", json={
            "table_name": "Product", "column_name": "Name", "entity_id": products["iPad Air"]["id"],
            "language_id": 9, "value": "x"
        }, headers=admin_headers)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_missing_translation_is_empty(self, db):
        assert await server.get_translation("Category", "Name", "nope", 1) == ""


class TestContact:

    @pytest.mark.asyncio
    async def test_requires_all_fields(self, client):
        response = await client.post("/api/contact", json={"name": "Ana", "email": "", "message": "hi"})
        assert response.status_code == 400
        assert response.json()["detail"] == "All fields are required."

    @pytest.mark.asyncio
    async def test_acknowledges(self, client):
        response = await client.post(
            "/api/contact", json={"name": "Ana", "email": "ana@example.com", "message": "Do you ship to Dhaka?"}
        )
        assert response.status_code == 200
        assert response.json()["message"].startswith("Thank you for your message!")
