import os
import time
import unittest

from db import fetchall_dict


class LiveDatabaseTests(unittest.TestCase):
	"""Round trip against a real MySQL schema; skipped unless one is reachable."""

	@classmethod
	def setUpClass(cls) -> None:
		order_ref = os.environ.get("LIVE_ORDER_REF")
		order_id = os.environ.get("LIVE_ORDER_ID")
		if not order_ref or not order_id:
			raise unittest.SkipTest("Set LIVE_ORDER_REF and LIVE_ORDER_ID to run against a real database.")
		cls.order_ref = int(order_ref)
		cls.order_id = int(order_id)

		from app import create_app  # local import so env vars above are applied
		from db import get_provider

		cls.app = create_app({"TESTING": True, "REQUIRE_AUTH": False, "RECONCILE_POLICY": "atomic"})
		cls.client = cls.app.test_client()
		cls.provider = get_provider(cls.app)

		try:
			with cls.app.app_context():
				with cls.provider.cursor() as cur:
					cur.execute("SELECT 1")
					cur.execute("SHOW TABLES")
					tables = {list(r.values())[0] if isinstance(r, dict) else r[0] for r in cur.fetchall()}
				if "CAD_IPE" not in tables:
					raise RuntimeError("Missing table: CAD_IPE")
		except Exception as exc:
			raise unittest.SkipTest(f"MySQL not reachable or schema not loaded. Details: {exc}")

		from insert_data import ensure_line_items

		ensure_line_items(cls.order_ref, cls.order_id, min_count=1)

	def _in_order_item_id(self) -> int:
		with self.app.app_context():
			with self.provider.cursor() as cur:
				cur.execute(
					"SELECT IPE_COD, IPE_STA FROM CAD_IPE WHERE REV_COD=%s AND PED_COD=%s AND IPE_DFP=0 LIMIT 1",
					(self.order_ref, self.order_id),
				)
				return fetchall_dict(cur)[0]["IPE_COD"]

	def test_insert_then_delete_out_of_order_item(self):
		suffix = str(int(time.time()))
		r = self.client.post(
			"/reconcile-items",
			json={
				"items": [
					{
						"outOfOrderFlag": True,
						"status": 9,
						"orderRef": self.order_ref,
						"orderId": self.order_id,
						"referenceCode": f"LIVE-{suffix}",
						"description": "Live test item",
						"unitValue": "1.00",
						"returnUser": "live-test",
						"returnedAt": "2024-01-01T00:00:00Z",
						"clientRef": suffix,
					}
				]
			},
		)
		self.assertEqual(r.status_code, 200, r.get_data(as_text=True))
		new_id = r.get_json()["details"]["inserted"][0]["itemId"]

		r = self.client.post("/reconcile-items", json={"items": [{"itemId": new_id, "outOfOrderFlag": True, "status": 1}]})
		self.assertEqual(r.status_code, 200)
		self.assertEqual(r.get_json()["deleted"], 1)

		# second delete is a soft warning
		r = self.client.post("/reconcile-items", json={"items": [{"itemId": new_id, "outOfOrderFlag": True, "status": 1}]})
		self.assertEqual(r.status_code, 200)
		self.assertEqual(r.get_json()["warnings"][0]["reason"], "not found")

	def test_update_in_order_item(self):
		item_id = self._in_order_item_id()
		r = self.client.post("/reconcile-items", json={"items": [{"itemId": item_id, "status": 2, "returnUser": "live"}]})
		self.assertEqual(r.status_code, 200)
		data = r.get_json()
		self.assertEqual(data["updated"] + len(data["warnings"]), 1)


if __name__ == "__main__":
	unittest.main()
