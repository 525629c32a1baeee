import time
from playwright.sync_api import expect, sync_playwright


def verify_scan_ui():
    with sync_playwright() as p:
        # Chromium's fake device gives getUserMedia a moving test pattern
        browser = p.chromium.launch(headless=True, args=[
            "--use-fake-ui-for-media-stream",
            "--use-fake-device-for-media-stream",
        ])
        context = browser.new_context(viewport={"width": 390, "height": 844}, permissions=["camera"])
        page = context.new_page()

        try:
            print("Navigating to Scan Page...")
            page.goto("http://localhost:8080/")
            page.wait_for_load_state("networkidle")
            time.sleep(2)

            expect(page.get_by_text("标签智能扫描")).to_be_visible()
            expect(page.get_by_text("暂无扫描记录，请对准标签开始")).to_be_visible()

            # Camera started, detector running
            expect(page.get_by_role("button", name="停止扫描")).to_be_visible()
            expect(page.get_by_text("自动侦测模式")).to_be_visible()

            print("Pausing scan...")
            page.get_by_role("button", name="停止扫描").click()
            expect(page.get_by_role("button", name="恢复扫描")).to_be_visible()

            print("Resuming scan...")
            page.get_by_role("button", name="恢复扫描").click()
            expect(page.get_by_role("button", name="停止扫描")).to_be_visible()

            page.screenshot(path="verification/verification_scan_ui.png")
            print("Screenshot saved to verification/verification_scan_ui.png")

        except Exception as e:
            print(f"Error: {e}")
            page.screenshot(path="verification/error.png")
        finally:
            browser.close()


if __name__ == "__main__":
    verify_scan_ui()
